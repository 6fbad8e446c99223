"""
Configuration Schema and Loader
===============================

Pydantic-based configuration for building extractors from YAML.

Design Principles:
    - Parameter names match ``set_param`` keys (``netFile``, ``layerName``, ...)
      through field aliases; snake_case names work as well
    - Relative file paths resolve against the directory of the config file
    - Pydantic validation catches typos and type errors before any file is read

Configuration Hierarchy::

    AppConfig
    ├── EngineConfig        Inference engine backend and device
    ├── ExtractorConfig     Extractor type + ExtractorParams
    └── LoggingConfig       Log level and optional log directory

Example::

    engine:
      device: cpu
    extractor:
      type: cnn
      params:
        netFile: models/alexnet.yaml
        weightsFile: models/alexnet.pth
        meanFile: models/mean.txt
        layerName: conv5
        scalesFile: models/conv5_scales.txt
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field

from convfeat.extractors.base import FeatureExtractor
from convfeat.network.registry import NetworkRegistry, default_registry

_PATH_FIELDS = ("net_file", "weights_file", "mean_file", "scales_file", "pca_file")


class EngineConfig(BaseModel):
    """Inference engine settings."""

    backend: Literal["torch"] = Field(
        default="torch",
        description="Inference engine. 'torch': YAML structure file + .pth state dict.",
    )
    device: str = Field(
        default="cpu",
        description="Device for inference ('cpu', 'cuda', 'cuda:0', ...).",
    )


class ExtractorParams(BaseModel):
    """Extractor parameters, keyed like ``set_param``."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    net_file: str = Field(default="", alias="netFile", description="Network structure file")
    weights_file: str = Field(default="", alias="weightsFile", description="Pretrained weights file")
    mean_file: str = Field(default="", alias="meanFile", description="Channel mean or mean image")
    scales_file: str = Field(default="", alias="scalesFile", description="Per-channel maxima")
    pca_file: str = Field(default="", alias="pcaFile", description="Binary PCA file")
    layer_name: str = Field(default="", alias="layerName", description="Comma-separated layer names")
    max_img_size: int = Field(default=0, alias="maxImgSize", ge=0, description="0 = unlimited")

    def to_params(self) -> dict[str, Any]:
        """Non-default parameters keyed by their ``set_param`` names."""
        return self.model_dump(by_alias=True, exclude_defaults=True)

    def resolve_paths(self, base_dir: Path) -> "ExtractorParams":
        """Copy with relative file paths made absolute against ``base_dir``."""
        updates = {}
        for field in _PATH_FIELDS:
            value = getattr(self, field)
            if value and not Path(value).is_absolute():
                updates[field] = str((base_dir / value).resolve())
        return self.model_copy(update=updates)


class ExtractorConfig(BaseModel):
    """Which extractor to build and how to configure it."""

    type: str = Field(default="cnn", description="Registered extractor type")
    params: ExtractorParams = Field(default_factory=ExtractorParams)


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO", description="DEBUG, INFO, WARNING or ERROR")
    log_dir: Optional[Path] = Field(default=None, description="Directory for a plain-text log file")


class AppConfig(BaseModel):
    """Top-level configuration."""

    engine: EngineConfig = Field(default_factory=EngineConfig)
    extractor: ExtractorConfig = Field(default_factory=ExtractorConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# ---------------------------------------------------------------------------
# Loading helpers
# ---------------------------------------------------------------------------


def load_config(path: str | Path) -> AppConfig:
    """Load and validate a YAML config file.

    Relative file paths in ``extractor.params`` are resolved against the
    directory containing the config file.
    """
    path = Path(path)
    with open(path, "r") as f:
        raw = yaml.safe_load(f) or {}
    cfg = AppConfig(**raw)
    cfg.extractor.params = cfg.extractor.params.resolve_paths(path.parent)
    return cfg


def save_config_snapshot(cfg: AppConfig, dest: Path) -> None:
    """Save a YAML snapshot of the config, with parameter names as aliases."""
    dest = Path(dest)
    dest.parent.mkdir(parents=True, exist_ok=True)
    data = json.loads(cfg.model_dump_json(by_alias=True))
    with open(dest, "w") as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False)


def build_registry(cfg: AppConfig) -> NetworkRegistry:
    return default_registry(cfg.engine.device)


def build_extractor(cfg: AppConfig, registry: Optional[NetworkRegistry] = None) -> FeatureExtractor:
    """Create the configured extractor, applying parameters in dependency order."""
    from convfeat.extractors.registry import create_extractor

    return create_extractor(
        {"type": cfg.extractor.type, "params": cfg.extractor.params.to_params()},
        registry=registry if registry is not None else build_registry(cfg),
    )
