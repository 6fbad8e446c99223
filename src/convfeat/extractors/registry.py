"""
Extractor Registry
==================

Factory for creating ``FeatureExtractor`` instances by type name.

Design Principles:
    - Maps type name → concrete class via lazy imports
    - ``create_extractor(config)`` applies parameters through ``set_param``
      in the order the extractor requires
    - ``register_backend()`` allows third-party extractors at runtime

Usage::

    from convfeat.extractors.registry import create_extractor

    ext = create_extractor({
        "type": "cnn",
        "params": {"netFile": "net.yaml", "weightsFile": "net.pth", "layerName": "conv5"},
    })
"""

from __future__ import annotations

import importlib
from typing import Any, Optional

from convfeat.extractors.base import FeatureExtractor
from convfeat.utils.logging import get_logger

logger = get_logger(__name__)

# Type name → (module_path, class_name); lazy so torch is only imported when used
_REGISTRY: dict[str, tuple[str, str]] = {
    "cnn": ("convfeat.extractors.cnn", "CNNFeatureExtractor"),
}

# Parameters whose loaders depend on earlier ones are applied last
PARAM_ORDER = ("layerName", "maxImgSize", "meanFile", "netFile", "weightsFile", "scalesFile", "pcaFile")


def list_backends() -> list[str]:
    """Return all registered extractor type names."""
    return list(_REGISTRY.keys())


def register_backend(name: str, module_path: str, class_name: str) -> None:
    """Register a custom extractor type.

    Parameters
    ----------
    name : str
        Type name (used in YAML config, case-insensitive).
    module_path : str
        Dotted Python module path.
    class_name : str
        Class name within the module.
    """
    _REGISTRY[name.lower()] = (module_path, class_name)
    logger.info("Registered extractor type: %s → %s.%s", name, module_path, class_name)


def get_extractor_class(name: str) -> type[FeatureExtractor]:
    key = name.lower()
    if key not in _REGISTRY:
        raise ValueError(
            f"Unknown extractor type: '{name}'. "
            f"Available: {list_backends()}. "
            f"Register custom types with register_backend()."
        )
    module_path, class_name = _REGISTRY[key]
    module = importlib.import_module(module_path)
    return getattr(module, class_name)


def ordered_params(params: dict[str, Any]) -> list[tuple[str, Any]]:
    """Sort parameters so that dependent ones come after their prerequisites.

    Unknown names keep their relative order at the end; ``set_param`` rejects
    them.
    """
    rank = {name: i for i, name in enumerate(PARAM_ORDER)}
    return sorted(params.items(), key=lambda item: rank.get(item[0], len(rank)))


def create_extractor(config: dict[str, Any], **kwargs: Any) -> FeatureExtractor:
    """Create and configure an extractor from a config dictionary.

    Parameters
    ----------
    config : dict
        ``type`` names the extractor (default ``"cnn"``); ``params`` maps
        parameter names to values.
    **kwargs
        Passed to the extractor constructor (e.g. ``registry=...``).

    Raises
    ------
    ValueError
        If the type is not registered.
    UnknownParameterError, InvalidValueError, LoadFailureError
        From ``set_param``.
    """
    config = dict(config)
    type_name = str(config.pop("type", "cnn"))
    params: Optional[dict[str, Any]] = config.pop("params", None) or {}

    cls = get_extractor_class(type_name)
    extractor = cls(**kwargs)
    for name, value in ordered_params(params):
        extractor.set_param(name, value)

    logger.info("Created extractor: type=%s name=%s", type_name, extractor.name)
    return extractor
