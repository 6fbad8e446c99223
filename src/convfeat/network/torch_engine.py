"""
PyTorch Inference Engine
========================

Builds a sequential PyTorch network from a YAML structure file and loads
its pretrained weights from a ``.pth`` state dict.

Structure File::

    name: tiny-alexnet
    input:
      channels: 3
    layers:
      - {name: conv1, type: conv, num_output: 96, kernel_size: 11, stride: 4}
      - {name: relu1, type: relu}
      - {name: pool1, type: pool, pool: max, kernel_size: 3, stride: 2}
      - {name: norm1, type: lrn, local_size: 5}
      - {name: conv2, type: conv, num_output: 256, kernel_size: 5, pad: 2, group: 2}
      - {name: fc6, type: fc, num_output: 4096}

``kernel_size``, ``stride`` and ``pad`` take either an int or a
``[height, width]`` pair.  Layer names double as module names in the state
dict (``conv1.weight``, ``conv1.bias``, ...).

Supported Layer Types:
    - conv     → ``nn.Conv2d``
    - pool     → ``nn.MaxPool2d`` / ``nn.AvgPool2d`` (``pool: max|ave``)
    - fc       → ``nn.Flatten`` + ``nn.Linear`` (``nn.LazyLinear`` without ``in_features``)
    - relu, lrn, dropout, softmax → parameter-free pass-through layers
"""

from __future__ import annotations

import warnings
from collections import OrderedDict
from pathlib import Path
from typing import Any, Iterable

import numpy as np
import torch
import yaml
from torch import nn

from convfeat.geometry import Size
from convfeat.network.engine import InferenceEngine, LayerInfo, LayerKind, Network
from convfeat.utils.logging import get_logger

logger = get_logger(__name__)

_PASS_THROUGH = {
    "relu": lambda spec: nn.ReLU(),
    "lrn": lambda spec: nn.LocalResponseNorm(
        int(spec.get("local_size", 5)),
        alpha=float(spec.get("alpha", 1e-4)),
        beta=float(spec.get("beta", 0.75)),
        k=float(spec.get("k", 1.0)),
    ),
    "dropout": lambda spec: nn.Dropout(float(spec.get("dropout_ratio", 0.5))),
    "softmax": lambda spec: nn.Softmax(dim=1),
}


def _hw(value: Any, default: int) -> tuple[int, int]:
    """Parse an int or [height, width] pair."""
    if value is None:
        return default, default
    if isinstance(value, int):
        return value, value
    height, width = value
    return int(height), int(width)


def build_layers(structure: dict) -> tuple[list[LayerInfo], "OrderedDict[str, nn.Module]", int]:
    """Translate a parsed structure file into layer infos and torch modules.

    Returns
    -------
    layers : list[LayerInfo]
    modules : OrderedDict[str, nn.Module]
    input_channels : int
    """
    input_channels = int(structure.get("input", {}).get("channels", 3))
    specs = structure.get("layers")
    if not specs:
        raise ValueError("Structure file defines no layers")

    layers: list[LayerInfo] = []
    modules: "OrderedDict[str, nn.Module]" = OrderedDict()
    channels = input_channels

    for spec in specs:
        name = str(spec["name"])
        kind = str(spec["type"]).lower()
        if "." in name or name in modules:
            raise ValueError(f"Invalid or duplicate layer name: '{name}'")

        if kind == "conv":
            kh, kw = _hw(spec.get("kernel_size"), 1)
            sh, sw = _hw(spec.get("stride"), 1)
            ph, pw = _hw(spec.get("pad"), 0)
            out_channels = int(spec["num_output"])
            modules[name] = nn.Conv2d(
                channels,
                out_channels,
                kernel_size=(kh, kw),
                stride=(sh, sw),
                padding=(ph, pw),
                groups=int(spec.get("group", 1)),
                bias=bool(spec.get("bias", True)),
            )
            channels = out_channels
            layers.append(LayerInfo(name, LayerKind.CONV, channels, Size(kw, kh), Size(sw, sh), Size(pw, ph)))
        elif kind == "pool":
            kh, kw = _hw(spec.get("kernel_size"), 2)
            sh, sw = _hw(spec.get("stride"), 1)
            ph, pw = _hw(spec.get("pad"), 0)
            pool_cls = nn.AvgPool2d if spec.get("pool", "max") in ("ave", "avg") else nn.MaxPool2d
            modules[name] = pool_cls(
                kernel_size=(kh, kw),
                stride=(sh, sw),
                padding=(ph, pw),
                ceil_mode=bool(spec.get("ceil_mode", False)),
            )
            layers.append(LayerInfo(name, LayerKind.POOL, channels, Size(kw, kh), Size(sw, sh), Size(pw, ph)))
        elif kind == "fc":
            out_features = int(spec["num_output"])
            in_features = spec.get("in_features")
            linear = nn.Linear(int(in_features), out_features) if in_features else nn.LazyLinear(out_features)
            modules[name] = nn.Sequential(OrderedDict(flatten=nn.Flatten(), linear=linear))
            channels = out_features
            layers.append(LayerInfo(name, LayerKind.FC, channels))
        elif kind in _PASS_THROUGH:
            modules[name] = _PASS_THROUGH[kind](spec)
            layers.append(LayerInfo(name, LayerKind.OTHER, channels))
        else:
            raise ValueError(f"Unsupported layer type '{kind}' for layer '{name}'")

    return layers, modules, input_channels


class TorchNetwork(Network):
    """Sequential PyTorch network with per-layer activation capture."""

    def __init__(
        self,
        layers: list[LayerInfo],
        modules: "OrderedDict[str, nn.Module]",
        input_channels: int,
        device: str = "cpu",
        name: str = "network",
    ):
        self._layers = layers
        self._input_channels = input_channels
        self._device = device
        self.name = name
        self.model = nn.Sequential(modules)
        self.model.eval()
        self.model.to(device)

    @property
    def layers(self) -> list[LayerInfo]:
        return self._layers

    @property
    def input_channels(self) -> int:
        return self._input_channels

    def load_weights(self, weights_file: Path) -> None:
        """Load a state dict, unwrapping the common ``state_dict`` / ``model`` containers."""
        state_dict = torch.load(str(weights_file), map_location=self._device, weights_only=True)
        if "state_dict" in state_dict:
            state_dict = state_dict["state_dict"]
        elif "model" in state_dict:
            state_dict = state_dict["model"]
        self.model.load_state_dict(state_dict, strict=True)
        self.model.eval()

    def forward(self, inputs: np.ndarray, layer_indices: Iterable[int]) -> dict[int, np.ndarray]:
        wanted = set(layer_indices)
        if not wanted:
            return {}
        last = max(wanted)

        outputs: dict[int, np.ndarray] = {}
        x = torch.from_numpy(np.ascontiguousarray(inputs, dtype=np.float32)).to(self._device)
        with torch.inference_mode():
            for idx, module in enumerate(self.model):
                x = module(x)
                if idx in wanted:
                    outputs[idx] = x[0].detach().cpu().numpy()
                if idx >= last:
                    break
        return outputs


class TorchEngine(InferenceEngine):
    """Loads ``TorchNetwork`` instances from YAML structure + ``.pth`` weights.

    Parameters
    ----------
    device : str
        Device for inference ('cpu', 'cuda', 'cuda:0', ...).
    """

    # Forward passes run under inference_mode on an eval-mode module and
    # never mutate module state.
    thread_safe = True

    def __init__(self, device: str = "cpu"):
        if device.startswith("cuda") and not torch.cuda.is_available():
            warnings.warn(
                "CUDA requested but not available. Falling back to CPU.",
                RuntimeWarning,
                stacklevel=2,
            )
            device = "cpu"
        self.device = device

    def load(self, structure_file: Path, weights_file: Path) -> TorchNetwork:
        structure_file = Path(structure_file)
        weights_file = Path(weights_file)
        if not structure_file.is_file():
            raise FileNotFoundError(f"Network structure file not found: {structure_file}")
        if not weights_file.is_file():
            raise FileNotFoundError(f"Weights file not found: {weights_file}")

        with open(structure_file, "r") as f:
            structure = yaml.safe_load(f)
        if not isinstance(structure, dict):
            raise ValueError(f"Malformed structure file: {structure_file}")

        layers, modules, input_channels = build_layers(structure)
        network = TorchNetwork(
            layers,
            modules,
            input_channels,
            device=self.device,
            name=str(structure.get("name", structure_file.stem)),
        )
        network.load_weights(weights_file)

        logger.info(
            "torch_network_loaded | name=%s layers=%d input_channels=%d device=%s",
            network.name,
            len(layers),
            input_channels,
            self.device,
        )
        return network
