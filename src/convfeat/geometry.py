"""
Cell Geometry
=============

Pixel ↔ cell conversions for a feature grid with a fixed cell size and a
border lost at each image edge.

    cells  = floor((pixels - 2 * border) / cell)
    pixels = cells * cell + 2 * border

For any pixel size ``p >= 2 * border`` the round trip
``cells_to_pixels(pixels_to_cells(p))`` is at most one cell short of ``p``.
"""

from __future__ import annotations

import math
from typing import NamedTuple


class Size(NamedTuple):
    """Width / height pair, in pixels or cells depending on context."""

    width: int
    height: int

    @classmethod
    def square(cls, value: int) -> "Size":
        return cls(value, value)

    @classmethod
    def of(cls, value) -> "Size":
        """Coerce an int, a 2-sequence or a Size into a Size."""
        if isinstance(value, Size):
            return value
        if isinstance(value, int):
            return cls(value, value)
        width, height = value
        return cls(int(width), int(height))


def pixels_to_cells(pixels: Size, cell_size: Size, border_size: Size) -> Size:
    """Number of whole cells that fit into ``pixels`` after trimming the borders.

    Negative results (image smaller than both borders) are clamped to zero.
    """
    pixels = Size.of(pixels)
    return Size(
        max(0, (pixels.width - 2 * border_size.width) // cell_size.width),
        max(0, (pixels.height - 2 * border_size.height) // cell_size.height),
    )


def cells_to_pixels(cells: Size, cell_size: Size, border_size: Size) -> Size:
    """Pixel extent covered by ``cells`` cells, including both borders."""
    cells = Size.of(cells)
    return Size(
        cells.width * cell_size.width + 2 * border_size.width,
        cells.height * cell_size.height + 2 * border_size.height,
    )


def round_up_to_cells(pixels: Size, cell_size: Size) -> Size:
    """Round a pixel size up to the next multiple of the cell size."""
    pixels = Size.of(pixels)
    return Size(
        math.ceil(pixels.width / cell_size.width) * cell_size.width,
        math.ceil(pixels.height / cell_size.height) * cell_size.height,
    )
