"""Tests for the shared network registry."""

from __future__ import annotations

import threading

import pytest

from convfeat.errors import LoadFailureError
from convfeat.network.registry import NetworkRegistry, make_key


class TestNetworkRegistry:
    def test_same_key_shares_network(self, registry, stub_engine, net_files):
        h1 = registry.acquire(*net_files)
        h2 = registry.acquire(*net_files)
        assert h1.network is h2.network
        assert stub_engine.load_count == 1
        assert registry.refcount(*net_files) == 2

    def test_different_keys_load_separately(self, registry, stub_engine, net_files, other_net_files):
        h1 = registry.acquire(*net_files)
        h2 = registry.acquire(*other_net_files)
        assert h1.network is not h2.network
        assert stub_engine.load_count == 2
        assert len(registry) == 2

    def test_release_last_handle_evicts(self, registry, stub_engine, net_files):
        h1 = registry.acquire(*net_files)
        h2 = registry.acquire(*net_files)
        h1.release()
        assert registry.refcount(*net_files) == 1
        h2.release()
        assert registry.refcount(*net_files) == 0
        assert len(registry) == 0

        registry.acquire(*net_files)
        assert stub_engine.load_count == 2

    def test_release_is_idempotent(self, registry, net_files):
        h1 = registry.acquire(*net_files)
        h2 = registry.acquire(*net_files)
        h1.release()
        h1.release()
        assert registry.refcount(*net_files) == 1
        assert not h2.released

    def test_released_handle_has_no_network(self, registry, net_files):
        handle = registry.acquire(*net_files)
        handle.release()
        assert handle.released
        with pytest.raises(RuntimeError, match="released"):
            handle.network

    def test_context_manager_releases(self, registry, net_files):
        with registry.acquire(*net_files) as handle:
            assert registry.refcount(*net_files) == 1
            assert handle.engine is registry.engine
        assert registry.refcount(*net_files) == 0

    def test_key_is_path_normalised(self, registry, stub_engine, net_files, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        registry.acquire(*net_files)
        registry.acquire("net.yaml", "./net.pth")
        assert stub_engine.load_count == 1
        assert make_key("net.yaml", "net.pth") == make_key(*net_files)

    def test_missing_file(self, registry, stub_engine, net_files, tmp_path):
        structure, _ = net_files
        missing = str(tmp_path / "missing.pth")
        with pytest.raises(LoadFailureError, match="weights file not found"):
            registry.acquire(structure, missing)
        assert stub_engine.load_count == 0
        assert registry.refcount(structure, missing) == 0

    def test_engine_error_wrapped(self, registry, tmp_path):
        structure = tmp_path / "broken.yaml"
        weights = tmp_path / "broken.pth"
        structure.write_text("broken: true\n")
        weights.write_bytes(b"")
        with pytest.raises(LoadFailureError, match="malformed structure") as excinfo:
            registry.acquire(structure, weights)
        assert isinstance(excinfo.value.__cause__, ValueError)
        assert registry.refcount(structure, weights) == 0
        assert len(registry) == 0

    def test_load_failure_is_an_os_error(self, registry, tmp_path):
        with pytest.raises(OSError):
            registry.acquire(tmp_path / "a.yaml", tmp_path / "a.pth")

    def test_concurrent_acquire_loads_once(self, make_engine, net_files):
        engine = make_engine(load_delay=0.05)
        registry = NetworkRegistry(engine)
        handles = []
        lock = threading.Lock()

        def worker():
            handle = registry.acquire(*net_files)
            with lock:
                handles.append(handle)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert engine.load_count == 1
        assert len(handles) == 8
        assert len({id(h.network) for h in handles}) == 1
        assert registry.refcount(*net_files) == 8

        for h in handles:
            h.release()
        assert registry.refcount(*net_files) == 0
