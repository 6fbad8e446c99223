"""
CNN Feature Extractor
=====================

Dense per-cell features from the activations of one or more layers of a
pretrained convolutional network.

Parameters:
    - *netFile* (str)     network structure file
    - *weightsFile* (str) pretrained weights for the network
    - *meanFile* (str)    channel mean (1–3 values, text) or mean image (.npy)
    - *scalesFile* (str)  maximum of every raw feature channel; features are
      scaled to [-1, 1].  Must not be set before the layers are resolved.
    - *pcaFile* (str)     binary PCA file with mean ``m`` and matrix ``A``;
      every cell ``c`` becomes ``Aᵀ (c − m)`` after scaling.  Must not be
      set before the layers are resolved.
    - *layerName* (str)   comma-separated layers whose channels are
      concatenated.  Empty or unknown → last conv layer before the first
      fully-connected layer.
    - *maxImgSize* (int)  larger images are downscaled to this size; 0 = no limit

Lifecycle::

    UNCONFIGURED → NETWORK_ACQUIRING → NETWORK_READY → LAYERS_RESOLVED ⇄ EXTRACTING

A network is acquired as soon as both ``netFile`` and ``weightsFile`` are
set, and layers are resolved right after, so a successful acquisition ends
in ``LAYERS_RESOLVED``.  Every ``set_param`` is transactional: on failure
the previous network, layers and auxiliary data stay in place.

Usage::

    ext = CNNFeatureExtractor("alexnet.yaml", "alexnet.pth", layer_name="conv5")
    ext.set_param("scalesFile", "conv5_scales.txt")
    grid = ext.extract(image)          # (rows, cols, 256)
"""

from __future__ import annotations

import threading
import weakref
from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Optional

import numpy as np

from convfeat.errors import (
    ConfigMismatchError,
    ConvFeatError,
    ExtractionError,
    InvalidValueError,
    UsageError,
)
from convfeat.extractors.base import FeatureExtractor
from convfeat.extractors.loaders import load_mean, load_pca, load_scales, read_mean
from convfeat.extractors.params import ParamSpec, ParamValue
from convfeat.extractors.postprocessing import ChannelScaler, PCAProjector
from convfeat.extractors.preprocessing import Preprocessor
from convfeat.geometry import Size, pixels_to_cells, round_up_to_cells
from convfeat.network.registry import NetworkHandle, NetworkRegistry, default_registry
from convfeat.network.topology import LayerSpec, resolve_layers
from convfeat.utils.logging import get_logger

logger = get_logger(__name__)


class ExtractorState(str, Enum):
    UNCONFIGURED = "unconfigured"
    NETWORK_ACQUIRING = "network_acquiring"
    NETWORK_READY = "network_ready"
    LAYERS_RESOLVED = "layers_resolved"
    EXTRACTING = "extracting"


class CNNFeatureExtractor(FeatureExtractor):
    """Extracts features from a given layer (or layers) of a CNN.

    Parameters
    ----------
    net_file, weights_file : str
        Network structure and weights.  The network is loaded once both
        are given.
    mean_file : str
        Optional channel mean or mean image.
    layer_name : str
        Comma-separated layer names; empty selects the default layer.
    registry : NetworkRegistry or None
        Registry to acquire networks from.  Defaults to the process-wide
        registry for ``device``.
    device : str
        Device of the default registry's engine.
    """

    type = "CNN"

    def __init__(
        self,
        net_file: str = "",
        weights_file: str = "",
        mean_file: str = "",
        layer_name: str = "",
        registry: Optional[NetworkRegistry] = None,
        device: str = "cpu",
    ):
        super().__init__()
        self._registry = registry
        self._device = device
        self._handle: Optional[NetworkHandle] = None
        self._finalizer: Optional[weakref.finalize] = None
        self._layers: list[LayerSpec] = []
        self._mean: Optional[np.ndarray] = None
        self._scaler: Optional[ChannelScaler] = None
        self._projector: Optional[PCAProjector] = None
        self._thread_safe = False
        self._state = ExtractorState.UNCONFIGURED
        self._active = 0
        self._active_lock = threading.Lock()

        if layer_name:
            self.set_param("layerName", layer_name)
        if mean_file:
            self.set_param("meanFile", mean_file)
        if net_file:
            self.set_param("netFile", net_file)
        if weights_file:
            self.set_param("weightsFile", weights_file)

    @classmethod
    def param_specs(cls) -> Iterable[ParamSpec]:
        return (
            ParamSpec("netFile", str, "", "Network structure file"),
            ParamSpec("weightsFile", str, "", "Pretrained weights file"),
            ParamSpec("meanFile", str, "", "Channel mean (text) or mean image (.npy)"),
            ParamSpec("scalesFile", str, "", "Maximum of each raw feature channel"),
            ParamSpec("pcaFile", str, "", "Binary PCA file (rows, cols, m, A)"),
            ParamSpec("layerName", str, "", "Comma-separated layers to extract from"),
            ParamSpec("maxImgSize", int, 0, "Maximum image size; 0 = unlimited"),
        )

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def name(self) -> str:
        if not self._layers:
            return "CNN Features"
        return f"CNN Features ({','.join(spec.name for spec in self._layers)})"

    @property
    def state(self) -> ExtractorState:
        with self._active_lock:
            if self._active:
                return ExtractorState.EXTRACTING
        return self._state

    @property
    def layers(self) -> list[LayerSpec]:
        return list(self._layers)

    @property
    def num_raw_channels(self) -> int:
        return sum(spec.channels for spec in self._layers)

    def num_features(self) -> int:
        if self._projector is not None:
            return self._projector.output_dim
        return self.num_raw_channels

    def cell_size(self) -> Size:
        return self._layers[0].cell_size if self._layers else Size(1, 1)

    def border_size(self) -> Size:
        return self._layers[0].border_size if self._layers else Size(0, 0)

    def max_image_size(self) -> Size:
        return Size.square(int(self.params.get("maxImgSize")))

    def supports_multi_thread(self) -> bool:
        return self._thread_safe

    def patchwork_processing(self) -> bool:
        # Patchwork planes take the size of the largest scale; a size clamp
        # would rescale the whole plane.
        return bool(self._layers) and self.params.get("maxImgSize") == 0

    def patchwork_padding(self) -> Size:
        if not self._layers:
            return Size(0, 0)
        field = Size(
            max(spec.receptive_field.width for spec in self._layers),
            max(spec.receptive_field.height for spec in self._layers),
        )
        return round_up_to_cells(field, self.cell_size())

    # ------------------------------------------------------------------
    # Parameters
    # ------------------------------------------------------------------

    def _apply_param(self, name: str, value: ParamValue) -> None:
        if name in ("netFile", "weightsFile"):
            if value and not Path(value).is_file():
                raise InvalidValueError(f"{name} not found: {value}")
            files = {"netFile": self.params.get("netFile"), "weightsFile": self.params.get("weightsFile")}
            files[name] = value
            self._load_network(files["netFile"], files["weightsFile"])
        elif name == "layerName":
            self._load_layer_info(value)
        elif name == "meanFile":
            self._load_mean_file(value)
        elif name == "scalesFile":
            self._load_scales_file(value)
        elif name == "pcaFile":
            self._load_pca_file(value)
        elif name == "maxImgSize" and value < 0:
            raise InvalidValueError(f"maxImgSize must be >= 0, got {value}")

    def _get_registry(self) -> NetworkRegistry:
        if self._registry is None:
            self._registry = default_registry(self._device)
        return self._registry

    def _check_postprocessing(self, layers: list[LayerSpec]) -> None:
        raw = sum(spec.channels for spec in layers)
        if self._scaler is not None and self._scaler.num_channels != raw:
            raise ConfigMismatchError(
                f"Loaded scales cover {self._scaler.num_channels} channels, layers provide {raw}; "
                f"clear scalesFile first"
            )
        if self._projector is not None and self._projector.input_dim != raw:
            raise ConfigMismatchError(
                f"Loaded PCA expects {self._projector.input_dim} features, layers provide {raw}; "
                f"clear pcaFile first"
            )

    def _release_network(self) -> None:
        if self._finalizer is not None:
            self._finalizer()
        self._finalizer = None
        self._handle = None

    def _load_network(self, net_file: str, weights_file: str) -> None:
        if not net_file or not weights_file:
            if self._handle is not None:
                logger.info("network_released | extractor=%s", self.name)
            self._release_network()
            self._layers = []
            self._mean = None
            self._thread_safe = False
            self._state = ExtractorState.UNCONFIGURED
            return

        previous = self._state
        self._state = ExtractorState.NETWORK_ACQUIRING
        try:
            handle = self._get_registry().acquire(net_file, weights_file)
        except BaseException:
            self._state = previous
            raise

        try:
            network = handle.network
            self._state = ExtractorState.NETWORK_READY
            layers = resolve_layers(network, self.params.get("layerName"))
            mean_file = self.params.get("meanFile")
            mean = load_mean(mean_file, network.input_channels) if mean_file else None
            self._check_postprocessing(layers)
        except BaseException:
            handle.release()
            self._state = previous
            raise

        self._release_network()
        self._handle = handle
        self._finalizer = weakref.finalize(self, handle.release)
        self._layers = layers
        self._mean = mean
        self._thread_safe = bool(handle.engine.thread_safe)
        self._state = ExtractorState.LAYERS_RESOLVED

    def _load_layer_info(self, layer_name: str) -> None:
        if self._handle is None:
            # resolved once the network is loaded
            return
        layers = resolve_layers(self._handle.network, layer_name)
        self._check_postprocessing(layers)
        self._layers = layers
        self._state = ExtractorState.LAYERS_RESOLVED

    def _load_mean_file(self, mean_file: str) -> None:
        if not mean_file:
            self._mean = None
        elif self._handle is not None:
            self._mean = load_mean(mean_file, self._handle.network.input_channels)
        else:
            # channel count is checked once the network is loaded
            read_mean(mean_file)

    def _require_layers(self, name: str) -> int:
        if not self._layers:
            raise InvalidValueError(
                f"Parameter '{name}' must not be set before the network is loaded and "
                f"layerName is resolved"
            )
        return self.num_raw_channels

    def _load_scales_file(self, scales_file: str) -> None:
        if not scales_file:
            self._scaler = None
            return
        self._scaler = load_scales(scales_file, self._require_layers("scalesFile"))

    def _load_pca_file(self, pca_file: str) -> None:
        if not pca_file:
            self._projector = None
            return
        self._projector = PCAProjector(load_pca(pca_file, self._require_layers("pcaFile")))

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------

    @contextmanager
    def _extracting(self):
        with self._active_lock:
            self._active += 1
        try:
            yield
        finally:
            with self._active_lock:
                self._active -= 1

    def extract(self, image: Any) -> np.ndarray:
        """Compute the feature grid of ``image``.

        Raises
        ------
        UsageError
            The network is not loaded or no layer is resolved yet.
        ExtractionError
            The image is malformed or the forward pass failed.
        """
        if self._handle is None or not self._layers:
            raise UsageError(
                f"{self.type} extractor is not ready (state={self._state.value}); "
                f"set netFile and weightsFile first"
            )

        with self._extracting():
            network = self._handle.network
            layers = self._layers
            preprocess = Preprocessor(
                network.input_channels,
                mean=self._mean,
                max_size=int(self.params.get("maxImgSize")),
            )
            try:
                tensor, size = preprocess(image)
                activations = network.forward(tensor, [spec.index for spec in layers])
            except ConvFeatError:
                raise
            except Exception as exc:
                raise ExtractionError(f"Forward pass failed: {exc}") from exc

            cells = pixels_to_cells(size, self.cell_size(), self.border_size())
            rows, cols = cells.height, cells.width
            maps = []
            for spec in layers:
                act = activations.get(spec.index)
                if act is None or act.ndim != 3 or act.shape[0] != spec.channels:
                    shape = None if act is None else act.shape
                    raise ExtractionError(
                        f"Layer '{spec.name}' returned activations of shape {shape}, "
                        f"expected ({spec.channels}, h, w)"
                    )
                rows = min(rows, act.shape[1])
                cols = min(cols, act.shape[2])
                maps.append(act)

            if rows <= 0 or cols <= 0:
                logger.debug("extract_empty | size=%dx%d", size.width, size.height)
                return np.zeros((max(rows, 0), max(cols, 0), self.num_features()), dtype=np.float32)

            grid = np.concatenate(
                [np.transpose(act[:, :rows, :cols], (1, 2, 0)) for act in maps], axis=2
            ).astype(np.float32)
            if self._scaler is not None:
                grid = self._scaler(grid)
            if self._projector is not None:
                grid = self._projector(grid)

            logger.debug(
                "extract | size=%dx%d cells=%dx%d features=%d",
                size.width,
                size.height,
                cols,
                rows,
                grid.shape[2],
            )
            return np.ascontiguousarray(grid)

    # ------------------------------------------------------------------
    # Resources
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Release the network handle; the extractor returns to UNCONFIGURED."""
        self._release_network()
        self._layers = []
        self._mean = None
        self._thread_safe = False
        self._state = ExtractorState.UNCONFIGURED

    def __enter__(self) -> "CNNFeatureExtractor":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
