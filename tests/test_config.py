"""Tests for YAML configuration loading."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from convfeat.config import (
    AppConfig,
    ExtractorParams,
    build_extractor,
    load_config,
    save_config_snapshot,
)


def write_yaml(path: Path, data: dict) -> Path:
    path.write_text(yaml.safe_dump(data))
    return path


class TestExtractorParams:
    def test_aliases_and_field_names(self):
        a = ExtractorParams(netFile="n.yaml", layerName="conv5")
        b = ExtractorParams(net_file="n.yaml", layer_name="conv5")
        assert a == b

    def test_to_params_skips_defaults(self):
        params = ExtractorParams(layerName="conv5", maxImgSize=300).to_params()
        assert params == {"layerName": "conv5", "maxImgSize": 300}

    def test_unknown_key_rejected(self):
        with pytest.raises(ValidationError):
            ExtractorParams(layer="conv5")

    def test_negative_size_rejected(self):
        with pytest.raises(ValidationError):
            ExtractorParams(maxImgSize=-1)

    def test_resolve_paths(self, tmp_path):
        params = ExtractorParams(netFile="models/net.yaml", meanFile=str(tmp_path / "abs.txt"))
        resolved = params.resolve_paths(tmp_path)
        assert resolved.net_file == str((tmp_path / "models" / "net.yaml").resolve())
        assert resolved.mean_file == str(tmp_path / "abs.txt")
        assert resolved.layer_name == ""


class TestLoadConfig:
    def test_defaults(self, tmp_path):
        cfg = load_config(write_yaml(tmp_path / "cfg.yaml", {}))
        assert cfg.engine.backend == "torch"
        assert cfg.engine.device == "cpu"
        assert cfg.extractor.type == "cnn"
        assert cfg.logging.level == "INFO"

    def test_relative_paths_resolved_against_config(self, tmp_path):
        cfg_dir = tmp_path / "configs"
        cfg_dir.mkdir()
        cfg = load_config(
            write_yaml(cfg_dir / "cfg.yaml", {"extractor": {"params": {"netFile": "../net.yaml"}}})
        )
        assert cfg.extractor.params.net_file == str((tmp_path / "net.yaml").resolve())

    def test_unsupported_backend(self, tmp_path):
        with pytest.raises(ValidationError):
            load_config(write_yaml(tmp_path / "cfg.yaml", {"engine": {"backend": "caffe"}}))

    def test_snapshot_uses_parameter_names(self, tmp_path):
        cfg = AppConfig(extractor={"params": {"layerName": "conv5"}})
        dest = tmp_path / "out" / "snapshot.yaml"
        save_config_snapshot(cfg, dest)
        data = yaml.safe_load(dest.read_text())
        assert data["extractor"]["params"]["layerName"] == "conv5"
        assert load_config(dest).extractor.params.layer_name == "conv5"


class TestBuildExtractor:
    def test_build_with_registry(self, tmp_path, registry, net_files):
        structure, weights = net_files
        cfg = load_config(
            write_yaml(
                tmp_path / "cfg.yaml",
                {
                    "extractor": {
                        "params": {
                            "netFile": Path(structure).name,
                            "weightsFile": Path(weights).name,
                            "layerName": "conv3",
                        }
                    }
                },
            )
        )
        ext = build_extractor(cfg, registry=registry)
        assert ext.num_features() == 12
        assert registry.refcount(structure, weights) == 1
        ext.close()
