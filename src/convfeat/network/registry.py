"""
Network Registry
================

Shares loaded networks between extractor instances.

Each (structure file, weights file) pair maps to at most one live network.
Callers receive an owning ``NetworkHandle``; the registry counts owners and
drops its entry as soon as the last handle is released, so the next
``acquire`` for that key loads the network afresh.

Design Principles:
    - Explicit registry object, injected into extractors
      (``default_registry()`` provides a process-wide instance)
    - One lock for the table, one lock per key for loading: a concurrent
      acquire of a key that is being loaded waits and joins that load
    - Engine errors are wrapped in ``LoadFailureError``

Usage::

    registry = NetworkRegistry(TorchEngine())
    with registry.acquire("net.yaml", "net.pth") as handle:
        handle.network.forward(x, [3])
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Optional

from convfeat.errors import LoadFailureError
from convfeat.network.engine import InferenceEngine, Network
from convfeat.utils.logging import get_logger

logger = get_logger(__name__)

NetworkKey = tuple[str, str]


def make_key(structure_file: str | Path, weights_file: str | Path) -> NetworkKey:
    """Normalise a file pair into a registry key (absolute, resolved paths)."""
    return (str(Path(structure_file).resolve()), str(Path(weights_file).resolve()))


class _Entry:
    __slots__ = ("network", "refcount", "lock")

    def __init__(self) -> None:
        self.network: Optional[Network] = None
        self.refcount = 0
        self.lock = threading.Lock()


class NetworkHandle:
    """Owning reference to a shared network.

    Release exactly once, either explicitly or by leaving a ``with`` block.
    Further ``release()`` calls are no-ops.
    """

    def __init__(self, registry: "NetworkRegistry", key: NetworkKey, network: Network):
        self._registry = registry
        self._key = key
        self._network: Optional[Network] = network

    @property
    def key(self) -> NetworkKey:
        return self._key

    @property
    def network(self) -> Network:
        if self._network is None:
            raise RuntimeError(f"Network handle for {self._key} has been released")
        return self._network

    @property
    def engine(self) -> InferenceEngine:
        return self._registry.engine

    @property
    def released(self) -> bool:
        return self._network is None

    def release(self) -> None:
        if self._network is None:
            return
        self._network = None
        self._registry._release(self._key)

    def __enter__(self) -> "NetworkHandle":
        return self

    def __exit__(self, *exc) -> None:
        self.release()

    def __repr__(self) -> str:
        state = "released" if self.released else "live"
        return f"NetworkHandle({self._key[0]!r}, {self._key[1]!r}, {state})"


class NetworkRegistry:
    """Cache of loaded networks keyed by (structure file, weights file).

    Parameters
    ----------
    engine : InferenceEngine
        Engine used to load networks that are not live yet.
    """

    def __init__(self, engine: InferenceEngine):
        self.engine = engine
        self._entries: dict[NetworkKey, _Entry] = {}
        self._lock = threading.Lock()

    def acquire(self, structure_file: str | Path, weights_file: str | Path) -> NetworkHandle:
        """Return an owning handle, loading the network if it is not live.

        Raises
        ------
        LoadFailureError
            The files are missing, unreadable or structurally invalid.
        """
        key = make_key(structure_file, weights_file)

        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = _Entry()
                self._entries[key] = entry
            # Reserve a reference so the entry survives while we wait for the load
            entry.refcount += 1

        with entry.lock:
            if entry.network is None:
                try:
                    entry.network = self._load(key)
                except BaseException:
                    self._release(key)
                    raise
            else:
                logger.debug("network_reused | key=%s refs=%d", key, entry.refcount)
            network = entry.network

        return NetworkHandle(self, key, network)

    def _load(self, key: NetworkKey) -> Network:
        structure_file, weights_file = (Path(p) for p in key)
        for path, what in ((structure_file, "structure"), (weights_file, "weights")):
            if not path.is_file():
                raise LoadFailureError(f"Network {what} file not found: {path}")

        logger.info("network_loading | structure=%s weights=%s", structure_file.name, weights_file.name)
        try:
            network = self.engine.load(structure_file, weights_file)
        except LoadFailureError:
            raise
        except Exception as exc:
            raise LoadFailureError(
                f"Could not load network from {structure_file} / {weights_file}: {exc}"
            ) from exc

        logger.info("network_loaded | structure=%s layers=%d", structure_file.name, len(network.layers))
        return network

    def _release(self, key: NetworkKey) -> None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return
            entry.refcount -= 1
            if entry.refcount <= 0:
                del self._entries[key]
                logger.debug("network_evicted | key=%s", key)

    def refcount(self, structure_file: str | Path, weights_file: str | Path) -> int:
        """Number of live handles for a key (0 if not cached)."""
        with self._lock:
            entry = self._entries.get(make_key(structure_file, weights_file))
            return entry.refcount if entry is not None else 0

    def live_keys(self) -> list[NetworkKey]:
        with self._lock:
            return [k for k, e in self._entries.items() if e.network is not None]

    def __len__(self) -> int:
        return len(self.live_keys())


_default_registries: dict[str, NetworkRegistry] = {}
_default_lock = threading.Lock()


def default_registry(device: str = "cpu") -> NetworkRegistry:
    """Process-wide registry backed by a ``TorchEngine`` on ``device``."""
    with _default_lock:
        registry = _default_registries.get(device)
        if registry is None:
            from convfeat.network.torch_engine import TorchEngine

            registry = NetworkRegistry(TorchEngine(device=device))
            _default_registries[device] = registry
        return registry
