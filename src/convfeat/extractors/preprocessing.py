"""
Image Preprocessing
===================

Turns an input image into the (1, C, H, W) float32 tensor a network expects.

Steps::

    image  → float32 (H, W, C), pixel values kept in 0..255
           → downscale so max(H, W) <= max_size   (PIL bilinear, per channel)
           → adapt channels to the network input  (gray ↔ RGB)
           → subtract channel mean or mean image
           → transpose to (1, C, H, W)

Design Principles:
    - Deterministic: bilinear resampling of every channel in PIL "F" mode,
      target size ``round(side * max_size / max(H, W))`` (at least 1)
    - A mean image is subtracted per pixel only when its size equals the
      (resized) image; otherwise its per-channel average is used
    - Malformed images raise ``ExtractionError``
"""

from __future__ import annotations

from typing import Any, Optional

import numpy as np
from PIL import Image

from convfeat.errors import ExtractionError
from convfeat.geometry import Size

# ITU-R 601-2 luma, as used by PIL's "L" conversion
_LUMA = np.array([0.299, 0.587, 0.114], dtype=np.float32)


def to_array(image: Any) -> np.ndarray:
    """Convert an image to a float32 (H, W, C) array with C in {1, 3}."""
    if isinstance(image, Image.Image):
        image = image.convert("L") if image.mode in ("1", "L", "I", "F") else image.convert("RGB")
    arr = np.asarray(image, dtype=np.float32)

    if arr.ndim == 2:
        arr = arr[:, :, None]
    if arr.ndim != 3:
        raise ExtractionError(f"Expected an (H, W) or (H, W, C) image, got shape {arr.shape}")
    if arr.shape[2] == 4:
        arr = arr[:, :, :3]
    if arr.shape[2] not in (1, 3):
        raise ExtractionError(f"Unsupported number of image channels: {arr.shape[2]}")
    if arr.shape[0] == 0 or arr.shape[1] == 0:
        raise ExtractionError(f"Empty image: {arr.shape}")
    return arr


def clamp_size(width: int, height: int, max_size: int) -> Size:
    """Target size so that the larger side equals ``max_size`` (no upscaling)."""
    larger = max(width, height)
    if max_size <= 0 or larger <= max_size:
        return Size(width, height)
    scale = max_size / larger
    return Size(max(1, int(round(width * scale))), max(1, int(round(height * scale))))


def resize(arr: np.ndarray, size: Size) -> np.ndarray:
    """Bilinear resize of every channel of an (H, W, C) float32 array."""
    channels = [
        np.asarray(
            Image.fromarray(np.ascontiguousarray(arr[:, :, c])).resize(
                (size.width, size.height), Image.Resampling.BILINEAR
            ),
            dtype=np.float32,
        )
        for c in range(arr.shape[2])
    ]
    return np.stack(channels, axis=2)


def adapt_channels(arr: np.ndarray, channels: int) -> np.ndarray:
    if arr.shape[2] == channels:
        return arr
    if channels == 3 and arr.shape[2] == 1:
        return np.repeat(arr, 3, axis=2)
    if channels == 1 and arr.shape[2] == 3:
        return (arr @ _LUMA)[:, :, None]
    raise ExtractionError(f"Cannot convert a {arr.shape[2]}-channel image to {channels} channels")


class Preprocessor:
    """Image → network input tensor.

    Parameters
    ----------
    input_channels : int
        Channels expected by the network (1 or 3).
    mean : np.ndarray or None
        Channel mean of shape (C,) or mean image of shape (C, H, W).
    max_size : int
        Maximum image side; 0 means unlimited.
    """

    def __init__(self, input_channels: int, mean: Optional[np.ndarray] = None, max_size: int = 0):
        self.input_channels = input_channels
        self.mean = mean
        self.max_size = max_size

    def _subtract_mean(self, arr: np.ndarray) -> np.ndarray:
        if self.mean is None:
            return arr
        mean = self.mean
        if mean.ndim == 3:
            if mean.shape[1:] == arr.shape[:2]:
                return arr - np.transpose(mean, (1, 2, 0))
            mean = mean.mean(axis=(1, 2))
        return arr - mean.reshape(1, 1, -1)

    def __call__(self, image: Any) -> tuple[np.ndarray, Size]:
        """Preprocess ``image``.

        Returns
        -------
        tensor : np.ndarray, shape (1, C, H, W), float32
        size : Size
            Width and height of the image the tensor was built from.
        """
        arr = to_array(image)
        height, width = arr.shape[:2]

        target = clamp_size(width, height, self.max_size)
        if target != (width, height):
            arr = resize(arr, target)

        arr = adapt_channels(arr, self.input_channels)
        arr = self._subtract_mean(arr)

        tensor = np.ascontiguousarray(np.transpose(arr, (2, 0, 1))[None], dtype=np.float32)
        return tensor, Size(target.width, target.height)
