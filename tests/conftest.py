"""Shared pytest fixtures for convfeat tests.

The stub engine computes activation shapes with real convolution
arithmetic and fills channel ``c`` of layer ``i`` with
``100 * i + c + mean(input)``, so tests can check which layer and channel
every feature came from.
"""

from __future__ import annotations

import threading
import time
from pathlib import Path

import numpy as np
import pytest

from convfeat.geometry import Size
from convfeat.network.engine import InferenceEngine, LayerInfo, LayerKind, Network
from convfeat.network.registry import NetworkRegistry


def conv(name, channels, kernel, stride=1, pad=0):
    return LayerInfo(name, LayerKind.CONV, channels, Size.square(kernel), Size.square(stride), Size.square(pad))


def pool(name, channels, kernel, stride, pad=0):
    return LayerInfo(name, LayerKind.POOL, channels, Size.square(kernel), Size.square(stride), Size.square(pad))


def other(name, channels):
    return LayerInfo(name, LayerKind.OTHER, channels)


def fc(name, channels):
    return LayerInfo(name, LayerKind.FC, channels)


ALEXNET_LAYERS = [
    conv("conv1", 8, 11, 4),      # 0
    other("relu1", 8),            # 1
    pool("pool1", 8, 3, 2),       # 2
    conv("conv2", 16, 5, 1, 2),   # 3
    other("relu2", 16),           # 4
    pool("pool2", 16, 3, 2),      # 5
    conv("conv3", 12, 3, 1, 1),   # 6
    other("relu3", 12),           # 7
    conv("conv4", 12, 3, 1, 1),   # 8
    conv("conv5", 10, 3, 1, 1),   # 9
    other("relu5", 10),           # 10
    pool("pool5", 10, 3, 2),      # 11
    fc("fc6", 32),                # 12
    fc("fc7", 32),                # 13
]

SIMPLE_LAYERS = [
    conv("conv1", 4, 3),
    pool("pool1", 4, 2, 2),
    conv("conv2", 6, 3),
    fc("fc1", 10),
]


class StubNetwork(Network):
    def __init__(self, layers, input_channels=3, fail_forward=False):
        self._layers = list(layers)
        self._input_channels = input_channels
        self.fail_forward = fail_forward
        self.forward_calls = 0

    @property
    def layers(self):
        return self._layers

    @property
    def input_channels(self):
        return self._input_channels

    def forward(self, inputs, layer_indices):
        self.forward_calls += 1
        if self.fail_forward:
            raise RuntimeError("engine exploded")
        wanted = set(layer_indices)
        base = float(inputs.mean())
        _, _, h, w = inputs.shape
        outputs = {}
        for idx, layer in enumerate(self._layers):
            if idx > max(wanted):
                break
            if layer.is_spatial:
                h = max(0, (h + 2 * layer.padding.height - layer.kernel.height) // layer.stride.height + 1)
                w = max(0, (w + 2 * layer.padding.width - layer.kernel.width) // layer.stride.width + 1)
            if idx in wanted:
                values = 100 * idx + np.arange(layer.channels, dtype=np.float32) + base
                outputs[idx] = np.broadcast_to(values[:, None, None], (layer.channels, h, w)).copy()
        return outputs


class StubEngine(InferenceEngine):
    """Engine that counts loads; a structure file containing 'broken' fails to load."""

    def __init__(self, layers=ALEXNET_LAYERS, input_channels=3, load_delay=0.0, thread_safe=False):
        self.layers = layers
        self.input_channels = input_channels
        self.load_delay = load_delay
        self.thread_safe = thread_safe
        self.load_count = 0
        self._count_lock = threading.Lock()

    def load(self, structure_file, weights_file):
        with self._count_lock:
            self.load_count += 1
        if self.load_delay:
            time.sleep(self.load_delay)
        if "broken" in Path(structure_file).read_text():
            raise ValueError("malformed structure")
        return StubNetwork(self.layers, self.input_channels)


@pytest.fixture()
def rng():
    """Deterministic random generator."""
    return np.random.default_rng(42)


@pytest.fixture()
def net_files(tmp_path: Path) -> tuple[str, str]:
    """Placeholder structure and weights files."""
    structure = tmp_path / "net.yaml"
    weights = tmp_path / "net.pth"
    structure.write_text("name: stub\n")
    weights.write_bytes(b"\x00" * 16)
    return str(structure), str(weights)


@pytest.fixture()
def other_net_files(tmp_path: Path) -> tuple[str, str]:
    structure = tmp_path / "other.yaml"
    weights = tmp_path / "other.pth"
    structure.write_text("name: other\n")
    weights.write_bytes(b"\x00" * 16)
    return str(structure), str(weights)


@pytest.fixture()
def stub_engine() -> StubEngine:
    return StubEngine()


@pytest.fixture()
def registry(stub_engine) -> NetworkRegistry:
    return NetworkRegistry(stub_engine)


@pytest.fixture()
def make_engine():
    """Factory for stub engines with custom layers or behaviour."""
    return StubEngine


@pytest.fixture()
def alexnet_network() -> StubNetwork:
    return StubNetwork(ALEXNET_LAYERS)


@pytest.fixture()
def simple_network() -> StubNetwork:
    return StubNetwork(SIMPLE_LAYERS)
