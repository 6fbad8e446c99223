"""
Layer Topology
==============

Resolves layer names to ``LayerSpec`` objects carrying the pixel geometry
of each layer's output grid relative to the input image.

Core Algorithm::

    cell, border, rf = 1, 0, 1
    for layer in network.layers[: target + 1]:
        if layer is conv or pool (kernel k, stride s, padding p):
            rf     = rf + (k - 1) * cell
            border = max(0, border * s + floor((k - s) / 2) - p)
            cell   = cell * s

applied independently along x and y.  All other layer kinds pass the
geometry through unchanged.

Design Principles:
    - Geometry comes from network introspection only
    - The layer chain is assumed linear up to the target layer
    - Layers without a spatial grid (fully-connected and everything after
      the first one) cannot be selected
    - Multiple selected layers must share cell and border size, so their
      grids concatenate cell by cell
"""

from __future__ import annotations

from dataclasses import dataclass

from convfeat.errors import ConfigMismatchError
from convfeat.geometry import Size
from convfeat.network.engine import LayerInfo, LayerKind, Network
from convfeat.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class LayerSpec:
    """Geometry of one extraction layer."""

    name: str
    index: int
    cell_size: Size
    border_size: Size
    receptive_field: Size
    channels: int


def _accumulate(cell: int, border: int, rf: int, kernel: int, stride: int, pad: int) -> tuple[int, int, int]:
    rf = rf + (kernel - 1) * cell
    border = max(0, border * stride + (kernel - stride) // 2 - pad)
    cell = cell * stride
    return cell, border, rf


def layer_geometry(layers: list[LayerInfo], index: int) -> tuple[Size, Size, Size]:
    """Cell size, border size and receptive field at the output of ``layers[index]``."""
    cx = cy = 1
    bx = by = 0
    rx = ry = 1
    for layer in layers[: index + 1]:
        if not layer.is_spatial:
            continue
        cx, bx, rx = _accumulate(cx, bx, rx, layer.kernel.width, layer.stride.width, layer.padding.width)
        cy, by, ry = _accumulate(cy, by, ry, layer.kernel.height, layer.stride.height, layer.padding.height)
    return Size(cx, cy), Size(bx, by), Size(rx, ry)


def first_fc_index(layers: list[LayerInfo]) -> int:
    """Index of the first fully-connected layer, or ``len(layers)`` if there is none."""
    for idx, layer in enumerate(layers):
        if layer.kind == LayerKind.FC:
            return idx
    return len(layers)


def default_layer_index(layers: list[LayerInfo]) -> int:
    """Last convolutional layer before the first fully-connected layer."""
    for idx in range(first_fc_index(layers) - 1, -1, -1):
        if layers[idx].kind == LayerKind.CONV:
            return idx
    raise ConfigMismatchError("Network has no convolutional layer to extract features from")


def make_layer_spec(network: Network, index: int) -> LayerSpec:
    layers = network.layers
    layer = layers[index]
    if index >= first_fc_index(layers):
        raise ConfigMismatchError(
            f"Layer '{layer.name}' is at or after the first fully-connected layer "
            f"and has no spatial output"
        )
    cell, border, rf = layer_geometry(layers, index)
    return LayerSpec(layer.name, index, cell, border, rf, layer.channels)


def parse_layer_names(layer_name: str) -> list[str]:
    """Split a comma-separated layer list, dropping blanks and duplicates."""
    names: list[str] = []
    for part in layer_name.split(","):
        part = part.strip()
        if part and part not in names:
            names.append(part)
    return names


def resolve_layers(network: Network, layer_name: str) -> list[LayerSpec]:
    """Resolve a comma-separated list of layer names against ``network``.

    Names that do not exist are logged and skipped.  If none of them exists
    (or the list is empty), the last convolutional layer before the first
    fully-connected layer is used.

    Raises
    ------
    ConfigMismatchError
        A selected layer has no spatial grid, the selected layers disagree
        on cell or border size, or the network has no convolutional layer.
    """
    names = parse_layer_names(layer_name)
    specs: list[LayerSpec] = []
    for name in names:
        index = network.layer_index(name)
        if index < 0:
            logger.warning("layer_not_found | name=%s", name)
            continue
        specs.append(make_layer_spec(network, index))

    if not specs:
        fallback = default_layer_index(network.layers)
        if names:
            logger.warning(
                "layer_fallback | requested=%s using=%s",
                ",".join(names),
                network.layers[fallback].name,
            )
        specs.append(make_layer_spec(network, fallback))

    first = specs[0]
    for spec in specs[1:]:
        if spec.cell_size != first.cell_size or spec.border_size != first.border_size:
            raise ConfigMismatchError(
                f"Layers '{first.name}' (cell={tuple(first.cell_size)}, border={tuple(first.border_size)}) "
                f"and '{spec.name}' (cell={tuple(spec.cell_size)}, border={tuple(spec.border_size)}) "
                f"produce misaligned grids and cannot be concatenated"
            )

    logger.info(
        "layers_resolved | layers=%s cell=%dx%d border=%dx%d channels=%d",
        ",".join(s.name for s in specs),
        first.cell_size.width,
        first.cell_size.height,
        first.border_size.width,
        first.border_size.height,
        sum(s.channels for s in specs),
    )
    return specs
