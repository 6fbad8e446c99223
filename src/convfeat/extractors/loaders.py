"""
Auxiliary File Loaders
======================

Parsers for the three optional files of the CNN extractor.

Mean file
    ``.npy`` holding a channel mean (C,) or a mean image (C, H, W),
    (H, W, C) or (H, W); or a text file with 1–3 numbers separated by
    whitespace or commas.  C must be 1 or match the network input.

Scales file
    Maximum of every raw feature channel.  ``.npy``, plain text (one or
    more numbers per line), or raw little-endian float32.  Content made of
    printable ASCII and whitespace is always parsed as text, so a malformed
    text file is an error rather than a float32 array.

PCA file (binary, little endian)::

    int32   rows
    int32   cols
    float32 m[rows]
    float32 A[rows * cols]      row-major

Every loader raises ``InvalidValueError`` naming the file for unreadable or
malformed content, and ``ConfigMismatchError`` when the content does not fit
the network.
"""

from __future__ import annotations

import re
from pathlib import Path

import numpy as np

from convfeat.errors import ConfigMismatchError, InvalidValueError
from convfeat.extractors.postprocessing import ChannelScaler, PCATransform
from convfeat.utils.logging import get_logger

logger = get_logger(__name__)

_SEPARATORS = re.compile(r"[\s,;]+")
_BINARY_CHARS = re.compile(r"[^\x20-\x7e\t\n\r\f\v]")
_PCA_HEADER = np.dtype("<i4")
_PCA_VALUE = np.dtype("<f4")


def _require_file(path: Path, what: str) -> Path:
    path = Path(path)
    if not path.is_file():
        raise InvalidValueError(f"{what} file not found: {path}")
    return path


def _parse_numbers(text: str, path: Path) -> np.ndarray:
    tokens = [t for t in _SEPARATORS.split(text.strip()) if t]
    try:
        return np.array([float(t) for t in tokens], dtype=np.float32)
    except ValueError as exc:
        raise InvalidValueError(f"Malformed numeric content in {path}: {exc}") from exc


def _as_text(raw: bytes) -> str | None:
    """Decode ``raw`` as ASCII text, or return None for binary content.

    Only printable characters and whitespace count as text; a float32 such as
    2.0 (``00 00 00 40``) decodes as ASCII but holds NUL bytes.
    """
    try:
        text = raw.decode("ascii")
    except UnicodeDecodeError:
        return None
    if _BINARY_CHARS.search(text):
        return None
    return text


def _load_npy(path: Path) -> np.ndarray:
    try:
        return np.load(path, allow_pickle=False)
    except (OSError, ValueError) as exc:
        raise InvalidValueError(f"Cannot read {path}: {exc}") from exc


def read_mean(path: str | Path) -> np.ndarray:
    """Parse a mean file without checking it against a network.

    Returns
    -------
    np.ndarray
        float32 array of shape (C,) or (C, H, W) with C in {1, 3}.
    """
    path = _require_file(Path(path), "Mean")

    if path.suffix.lower() == ".npy":
        mean = _load_npy(path).astype(np.float32)
        if mean.ndim == 2:
            mean = mean[None]
        elif mean.ndim == 3 and mean.shape[0] not in (1, 3) and mean.shape[2] in (1, 3):
            mean = np.transpose(mean, (2, 0, 1))
        if mean.ndim not in (1, 3) or mean.shape[0] not in (1, 3) or mean.size == 0:
            raise InvalidValueError(f"Unsupported mean shape {mean.shape} in {path}")
    else:
        try:
            text = path.read_text()
        except (OSError, UnicodeDecodeError) as exc:
            raise InvalidValueError(f"Cannot read mean file {path}: {exc}") from exc
        mean = _parse_numbers(text, path)
        if not 1 <= mean.size <= 3:
            raise InvalidValueError(f"Mean file {path} must hold 1 to 3 values, found {mean.size}")
    return mean


def load_mean(path: str | Path, input_channels: int) -> np.ndarray:
    """Load a channel mean or mean image for a network with ``input_channels``.

    Returns
    -------
    np.ndarray
        float32 array of shape (input_channels,) or (input_channels, H, W).
    """
    path = Path(path)
    mean = read_mean(path)

    channels = mean.shape[0]
    if channels != input_channels:
        if channels != 1:
            raise ConfigMismatchError(
                f"Mean file {path} has {channels} channels, network expects {input_channels}"
            )
        mean = np.repeat(mean, input_channels, axis=0)

    logger.info("mean_loaded | file=%s shape=%s", path.name, mean.shape)
    return np.ascontiguousarray(mean, dtype=np.float32)


def load_scales(path: str | Path, num_channels: int) -> ChannelScaler:
    """Load per-channel maxima and wrap them in a ``ChannelScaler``."""
    path = _require_file(Path(path), "Scales")

    if path.suffix.lower() == ".npy":
        scales = _load_npy(path).astype(np.float32).reshape(-1)
    else:
        try:
            raw = path.read_bytes()
        except OSError as exc:
            raise InvalidValueError(f"Cannot read scales file {path}: {exc}") from exc
        text = _as_text(raw)
        if text is not None:
            scales = _parse_numbers(text, path)
        elif len(raw) % _PCA_VALUE.itemsize:
            raise InvalidValueError(
                f"Scales file {path} is neither text nor a float32 array ({len(raw)} bytes)"
            )
        else:
            scales = np.frombuffer(raw, dtype=_PCA_VALUE).astype(np.float32)

    if scales.size != num_channels:
        raise ConfigMismatchError(
            f"Scales file {path} holds {scales.size} values, extractor has {num_channels} channels"
        )
    try:
        scaler = ChannelScaler(scales)
    except ConfigMismatchError as exc:
        raise ConfigMismatchError(f"Scales file {path}: {exc}") from exc
    logger.info("scales_loaded | file=%s channels=%d", path.name, scaler.num_channels)
    return scaler


def load_pca(path: str | Path, num_channels: int) -> PCATransform:
    """Load a binary PCA file (see module docstring for the layout)."""
    path = _require_file(Path(path), "PCA")
    try:
        raw = path.read_bytes()
    except OSError as exc:
        raise InvalidValueError(f"Cannot read PCA file {path}: {exc}") from exc

    header_size = 2 * _PCA_HEADER.itemsize
    if len(raw) < header_size:
        raise InvalidValueError(f"PCA file {path} is too short for its header ({len(raw)} bytes)")
    rows, cols = (int(v) for v in np.frombuffer(raw, dtype=_PCA_HEADER, count=2))
    if rows <= 0 or cols <= 0:
        raise InvalidValueError(f"PCA file {path} declares an invalid matrix size {rows}x{cols}")

    expected = header_size + (rows + rows * cols) * _PCA_VALUE.itemsize
    if len(raw) != expected:
        raise InvalidValueError(
            f"PCA file {path} has {len(raw)} bytes, expected {expected} for a {rows}x{cols} matrix"
        )

    values = np.frombuffer(raw, dtype=_PCA_VALUE, offset=header_size).astype(np.float32)
    transform = PCATransform(mean=values[:rows].copy(), matrix=values[rows:].reshape(rows, cols).copy())

    if transform.input_dim != num_channels:
        raise ConfigMismatchError(
            f"PCA file {path} expects {transform.input_dim} features, extractor has {num_channels} channels"
        )
    logger.info("pca_loaded | file=%s dims=%d->%d", path.name, rows, cols)
    return transform


def save_pca(path: str | Path, transform: PCATransform) -> Path:
    """Write a PCA transform in the binary layout read by ``load_pca``."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    rows, cols = transform.matrix.shape
    with open(path, "wb") as f:
        f.write(np.array([rows, cols], dtype=_PCA_HEADER).tobytes())
        f.write(np.asarray(transform.mean, dtype=_PCA_VALUE).tobytes())
        f.write(np.asarray(transform.matrix, dtype=_PCA_VALUE).tobytes(order="C"))
    return path
