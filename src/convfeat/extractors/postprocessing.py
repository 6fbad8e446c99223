"""
Feature Post-processing
=======================

Optional transforms applied to every cell of a raw feature grid, in order:

1. ``ChannelScaler``: ``c[i] / scale[i]`` clipped to [-1, 1]
2. ``PCAProjector``: ``Aᵀ (c − m)``

Both check their dimensions on construction, so a mismatch is a
configuration error and never surfaces per cell.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from convfeat.errors import ConfigMismatchError


@dataclass(frozen=True)
class PCATransform:
    """Mean feature vector ``m`` (rows,) and projection matrix ``A`` (rows, cols)."""

    mean: np.ndarray
    matrix: np.ndarray

    def __post_init__(self):
        if self.matrix.ndim != 2 or self.mean.shape != (self.matrix.shape[0],):
            raise ConfigMismatchError(
                f"PCA mean of shape {self.mean.shape} does not match matrix of shape {self.matrix.shape}"
            )

    @property
    def input_dim(self) -> int:
        return self.matrix.shape[0]

    @property
    def output_dim(self) -> int:
        return self.matrix.shape[1]


class ChannelScaler:
    """Scales each channel by its precomputed maximum into [-1, 1]."""

    def __init__(self, scales: np.ndarray):
        scales = np.asarray(scales, dtype=np.float32).reshape(-1)
        if scales.size == 0:
            raise ConfigMismatchError("Scale vector is empty")
        if not np.all(scales > 0):
            bad = int(np.flatnonzero(~(scales > 0))[0])
            raise ConfigMismatchError(f"Scale of channel {bad} is not positive: {scales[bad]}")
        self.scales = scales

    @property
    def num_channels(self) -> int:
        return self.scales.size

    def __call__(self, features: np.ndarray) -> np.ndarray:
        if features.shape[-1] != self.num_channels:
            raise ConfigMismatchError(
                f"Scaler expects {self.num_channels} channels, got {features.shape[-1]}"
            )
        return np.clip(features / self.scales, -1.0, 1.0).astype(np.float32, copy=False)


class PCAProjector:
    """Projects feature vectors ``c`` to ``Aᵀ (c − m)``."""

    def __init__(self, transform: PCATransform):
        self.transform = transform
        self._mean = transform.mean.astype(np.float32, copy=False)
        self._matrix = transform.matrix.astype(np.float32, copy=False)

    @property
    def input_dim(self) -> int:
        return self.transform.input_dim

    @property
    def output_dim(self) -> int:
        return self.transform.output_dim

    def __call__(self, features: np.ndarray) -> np.ndarray:
        if features.shape[-1] != self.input_dim:
            raise ConfigMismatchError(
                f"PCA expects {self.input_dim} features, got {features.shape[-1]}"
            )
        return ((features - self._mean) @ self._matrix).astype(np.float32, copy=False)
