"""
Inference Engine Interface
==========================

Abstract interface between convfeat and whatever runs the network.

An engine turns a (structure file, weights file) pair into a ``Network``.
A network exposes its layers in forward order together with the geometry
(kernel, stride, padding) of every convolution and pooling layer, and can
run a forward pass that returns the activation maps of selected layers.

Design Principles:
    - convfeat never builds graphs or parses weights itself
    - Layer geometry is introspected, never hard-coded per architecture
    - ``thread_safe`` declares whether concurrent forward passes are allowed
    - Concrete engines: ``torch_engine.TorchEngine`` (YAML structure + .pth)
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable

import numpy as np

from convfeat.geometry import Size


class LayerKind(str, Enum):
    """Layer categories relevant to cell geometry."""

    CONV = "conv"
    POOL = "pool"
    FC = "fc"
    OTHER = "other"


@dataclass(frozen=True)
class LayerInfo:
    """Static description of one network layer.

    ``kernel``, ``stride`` and ``padding`` are only meaningful for
    convolution and pooling layers; other kinds keep the defaults.
    """

    name: str
    kind: LayerKind
    channels: int
    kernel: Size = Size(1, 1)
    stride: Size = Size(1, 1)
    padding: Size = Size(0, 0)

    @property
    def is_spatial(self) -> bool:
        return self.kind in (LayerKind.CONV, LayerKind.POOL)


class Network(ABC):
    """A loaded network, shared between extractors through the registry."""

    @property
    @abstractmethod
    def layers(self) -> list[LayerInfo]:
        """All layers in forward order."""
        ...

    @property
    @abstractmethod
    def input_channels(self) -> int:
        """Number of channels the network expects (1 or 3)."""
        ...

    def layer_index(self, name: str) -> int:
        """Index of the layer called ``name``, or -1 if there is none."""
        for idx, layer in enumerate(self.layers):
            if layer.name == name:
                return idx
        return -1

    def layer_by_index(self, index: int) -> LayerInfo:
        return self.layers[index]

    @abstractmethod
    def forward(self, inputs: np.ndarray, layer_indices: Iterable[int]) -> dict[int, np.ndarray]:
        """Run one forward pass and collect activations.

        Parameters
        ----------
        inputs : np.ndarray
            Float32 input tensor of shape (1, C, H, W).
        layer_indices : iterable of int
            Layers whose activations are wanted.  The pass may stop after
            the deepest of them.

        Returns
        -------
        dict[int, np.ndarray]
            Activation map of shape (C, h, w) per requested layer index.
        """
        ...


class InferenceEngine(ABC):
    """Loads networks from disk."""

    #: Whether forward passes on one network may run concurrently.
    thread_safe: bool = False

    @abstractmethod
    def load(self, structure_file: Path, weights_file: Path) -> Network:
        """Load a network.  Raise any exception on failure; the registry wraps it."""
        ...
