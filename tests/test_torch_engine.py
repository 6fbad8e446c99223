"""Tests for the PyTorch inference engine.

Builds a tiny network from a YAML structure file, saves random weights and
runs it end to end through the registry and the CNN extractor.
"""

from __future__ import annotations

import numpy as np
import pytest
import yaml

torch = pytest.importorskip("torch")

from convfeat.errors import LoadFailureError  # noqa: E402
from convfeat.extractors.cnn import CNNFeatureExtractor  # noqa: E402
from convfeat.geometry import Size  # noqa: E402
from convfeat.network.engine import LayerKind  # noqa: E402
from convfeat.network.registry import NetworkRegistry  # noqa: E402
from convfeat.network.torch_engine import TorchEngine, build_layers  # noqa: E402

TINY_NET = {
    "name": "tiny",
    "input": {"channels": 3},
    "layers": [
        {"name": "conv1", "type": "conv", "num_output": 4, "kernel_size": 3},
        {"name": "relu1", "type": "relu"},
        {"name": "pool1", "type": "pool", "pool": "max", "kernel_size": 2, "stride": 2},
        {"name": "conv2", "type": "conv", "num_output": 6, "kernel_size": 3},
        {"name": "relu2", "type": "relu"},
        {"name": "fc1", "type": "fc", "num_output": 10, "in_features": 24},
    ],
}


def write_network(directory, structure, seed=0, wrap=None):
    torch.manual_seed(seed)
    _, modules, _ = build_layers(structure)
    state_dict = torch.nn.Sequential(modules).state_dict()
    structure_file = directory / f"{structure['name']}.yaml"
    weights_file = directory / f"{structure['name']}.pth"
    structure_file.write_text(yaml.safe_dump(structure))
    torch.save({wrap: state_dict} if wrap else state_dict, weights_file)
    return str(structure_file), str(weights_file)


@pytest.fixture()
def tiny_files(tmp_path):
    return write_network(tmp_path, TINY_NET)


@pytest.fixture()
def torch_registry():
    return NetworkRegistry(TorchEngine(device="cpu"))


class TestBuildLayers:
    def test_layer_infos(self):
        layers, modules, input_channels = build_layers(TINY_NET)
        assert input_channels == 3
        assert [layer.kind for layer in layers] == [
            LayerKind.CONV, LayerKind.OTHER, LayerKind.POOL, LayerKind.CONV, LayerKind.OTHER, LayerKind.FC,
        ]
        assert layers[2].kernel == Size(2, 2)
        assert layers[2].stride == Size(2, 2)
        assert layers[3].channels == 6
        assert list(modules) == [layer["name"] for layer in TINY_NET["layers"]]

    def test_rectangular_kernel(self):
        structure = {"layers": [{"name": "c", "type": "conv", "num_output": 2, "kernel_size": [3, 5], "pad": [1, 2]}]}
        (layer,), _, _ = build_layers(structure)
        assert layer.kernel == Size(5, 3)
        assert layer.padding == Size(2, 1)

    @pytest.mark.parametrize(
        "layers",
        [
            [],
            [{"name": "x", "type": "deconv"}],
            [{"name": "a.b", "type": "relu"}],
            [{"name": "r", "type": "relu"}, {"name": "r", "type": "relu"}],
        ],
    )
    def test_invalid_structures(self, layers):
        with pytest.raises(ValueError):
            build_layers({"layers": layers})


class TestTorchEngine:
    def test_load(self, torch_registry, tiny_files):
        with torch_registry.acquire(*tiny_files) as handle:
            network = handle.network
            assert network.input_channels == 3
            assert network.layer_index("conv2") == 3
            assert handle.engine.thread_safe

    def test_forward_matches_module(self, torch_registry, tiny_files, rng):
        x = rng.normal(size=(1, 3, 32, 32)).astype(np.float32)
        with torch_registry.acquire(*tiny_files) as handle:
            network = handle.network
            outputs = network.forward(x, [0, 3])
            with torch.no_grad():
                expected = network.model[:4](torch.from_numpy(x))[0].numpy()
        assert set(outputs) == {0, 3}
        assert outputs[0].shape == (4, 30, 30)
        np.testing.assert_allclose(outputs[3], expected, rtol=1e-5, atol=1e-5)

    def test_wrapped_state_dict(self, torch_registry, tmp_path):
        files = write_network(tmp_path, TINY_NET, wrap="state_dict")
        with torch_registry.acquire(*files) as handle:
            assert len(handle.network.layers) == 6

    def test_weights_mismatch(self, torch_registry, tmp_path):
        structure_file, _ = write_network(tmp_path, TINY_NET)
        other = dict(TINY_NET, name="other")
        other["layers"] = [dict(TINY_NET["layers"][0], num_output=5)] + TINY_NET["layers"][1:]
        _, wrong_weights = write_network(tmp_path, other)
        with pytest.raises(LoadFailureError):
            torch_registry.acquire(structure_file, wrong_weights)
        assert len(torch_registry) == 0

    def test_malformed_structure(self, torch_registry, tmp_path, tiny_files):
        bad = tmp_path / "bad.yaml"
        bad.write_text("- just\n- a list\n")
        with pytest.raises(LoadFailureError, match="Malformed"):
            torch_registry.acquire(bad, tiny_files[1])

    def test_cuda_fallback(self):
        if torch.cuda.is_available():
            pytest.skip("CUDA is available")
        with pytest.warns(RuntimeWarning, match="Falling back to CPU"):
            engine = TorchEngine(device="cuda")
        assert engine.device == "cpu"


class TestEndToEnd:
    def test_extractor_geometry_and_grid(self, torch_registry, tiny_files, rng):
        ext = CNNFeatureExtractor(*tiny_files, registry=torch_registry)
        assert [spec.name for spec in ext.layers] == ["conv2"]
        assert ext.cell_size() == Size(2, 2)
        assert ext.border_size() == Size(3, 3)
        assert ext.patchwork_padding() == Size(8, 8)
        assert ext.supports_multi_thread()

        image = rng.integers(0, 256, size=(32, 32, 3), dtype=np.uint8)
        grid = ext.extract(image)
        assert grid.shape == (13, 13, 6)
        assert np.all(np.isfinite(grid))
        ext.close()
        assert len(torch_registry) == 0

    def test_relu_layer_selection(self, torch_registry, tiny_files):
        ext = CNNFeatureExtractor(*tiny_files, layer_name="relu2", registry=torch_registry)
        grid = ext.extract(np.zeros((40, 24, 3), dtype=np.uint8))
        assert grid.shape == (17, 9, 6)
        assert np.all(grid >= 0.0)
