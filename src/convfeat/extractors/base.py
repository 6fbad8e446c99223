"""
Feature Extractor Base Class
============================

Abstract interface that every dense feature extractor implements.

Design Principles:
    - Features form a grid of cells: ``extract(image)`` → (rows, cols, D)
    - Cell geometry (``cell_size``, ``border_size``) maps cells to pixels
    - Behaviour is driven by named parameters (``set_param`` / ``get_param``)
    - Advisory capabilities (multi-threading, patchworking) for the caller

Required Overrides:
    - ``type`` class attribute and ``name`` property
    - ``num_features()``, ``cell_size()``, ``border_size()``
    - ``extract(image)`` → (rows, cols, num_features()) float32 array
    - ``_apply_param(name, value)`` for parameters with side effects
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Iterable

import numpy as np
from PIL import Image

from convfeat.errors import ExtractionError
from convfeat.extractors.params import ParameterStore, ParamSpec, ParamValue
from convfeat.geometry import Size, cells_to_pixels, pixels_to_cells


class FeatureExtractor(ABC):
    """Abstract base for all dense feature extractors.

    Subclasses declare their parameters through ``param_specs()`` and get a
    ``ParameterStore`` for free.
    """

    #: Unique identifier of this kind of extractor (letters, digits, '-', '_').
    type: str = ""

    def __init__(self) -> None:
        self.params = ParameterStore(self.param_specs())

    @classmethod
    def param_specs(cls) -> Iterable[ParamSpec]:
        """Parameters understood by this extractor."""
        return ()

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable name for logging."""
        ...

    @abstractmethod
    def num_features(self) -> int:
        """Number of features extracted per cell."""
        ...

    @abstractmethod
    def cell_size(self) -> Size:
        """Cell size in pixels along x and y."""
        ...

    @abstractmethod
    def border_size(self) -> Size:
        """Pixels lost at each image edge along x and y.

        A border of (4, 2) means only the region between (4, 2) and
        (width - 5, height - 3) is turned into features.
        """
        ...

    @abstractmethod
    def extract(self, image: Any) -> np.ndarray:
        """Compute the feature grid of an image.

        Parameters
        ----------
        image : np.ndarray or PIL.Image.Image
            (H, W) or (H, W, 3) image.

        Returns
        -------
        np.ndarray, shape (rows, cols, num_features())
            Freshly allocated float32 feature grid.
        """
        ...

    def max_image_size(self) -> Size:
        """Largest image size processed without downscaling; 0 means unlimited."""
        return Size(0, 0)

    def supports_multi_thread(self) -> bool:
        """True if ``extract`` may be called concurrently from several threads."""
        return False

    def patchwork_processing(self) -> bool:
        """True if tiling several scales of an image onto one plane is reasonable."""
        return False

    def patchwork_padding(self) -> Size:
        """Padding in pixels to leave between images tiled on one plane."""
        return Size(0, 0)

    def cells_to_pixels(self, cells: Size) -> Size:
        return cells_to_pixels(Size.of(cells), self.cell_size(), self.border_size())

    def pixels_to_cells(self, pixels: Size) -> Size:
        return pixels_to_cells(Size.of(pixels), self.cell_size(), self.border_size())

    # ------------------------------------------------------------------
    # Parameters
    # ------------------------------------------------------------------

    def set_param(self, name: str, value: ParamValue) -> None:
        """Change a parameter.

        Raises
        ------
        UnknownParameterError
            There is no parameter with the given name.
        InvalidValueError
            The value is not allowed for the given parameter.
        """
        value = self.params.coerce(name, value)
        self._apply_param(name, value)
        self.params.set(name, value)

    def get_param(self, name: str) -> ParamValue:
        return self.params.get(name)

    def list_params(self) -> dict[str, ParamValue]:
        return self.params.as_dict()

    def _apply_param(self, name: str, value: ParamValue) -> None:
        """Validate and apply side effects of a new value before it is stored.

        Raising leaves the stored value and all derived state unchanged.
        """

    # ------------------------------------------------------------------
    # Convenience
    # ------------------------------------------------------------------

    def extract_from_file(self, image_path: Path) -> np.ndarray:
        """Load an image file as RGB and extract its feature grid."""
        image_path = Path(image_path)
        if not image_path.is_file():
            raise FileNotFoundError(f"Image not found: {image_path}")
        try:
            with Image.open(image_path) as img:
                rgb = np.asarray(img.convert("RGB"))
        except OSError as exc:
            raise ExtractionError(f"Cannot decode image {image_path}: {exc}") from exc
        return self.extract(rgb)

    def save_features(self, features: np.ndarray, output_path: Path) -> Path:
        """Save a feature grid as ``.npy``; returns the written path."""
        output_path = Path(output_path).with_suffix(".npy")
        output_path.parent.mkdir(parents=True, exist_ok=True)
        np.save(output_path, features)
        return output_path

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"
