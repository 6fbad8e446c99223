"""Tests for the typed parameter store."""

from __future__ import annotations

from pathlib import Path

import pytest

from convfeat.errors import ConvFeatError, InvalidValueError, UnknownParameterError
from convfeat.extractors.params import ParameterStore, ParamSpec


@pytest.fixture()
def store():
    return ParameterStore([ParamSpec("size", int, 0), ParamSpec("file", str, "")])


def test_defaults(store):
    assert store.as_dict() == {"size": 0, "file": ""}
    assert store.names() == ["size", "file"]
    assert "size" in store
    assert "other" not in store


def test_set_and_get(store):
    store.set("size", 12)
    assert store.get("size") == 12


def test_path_values_become_strings(store):
    assert store.set("file", Path("a") / "b.txt") == str(Path("a") / "b.txt")


def test_unknown_name(store):
    with pytest.raises(UnknownParameterError) as excinfo:
        store.set("Size", 1)
    assert isinstance(excinfo.value, KeyError)
    assert isinstance(excinfo.value, ConvFeatError)
    assert "Unknown parameter: 'Size'" in str(excinfo.value)
    assert excinfo.value.known == ["size", "file"]


@pytest.mark.parametrize("name, value", [("size", "3"), ("size", 3.0), ("size", False), ("file", 3), ("file", None)])
def test_wrong_kind(store, name, value):
    with pytest.raises(InvalidValueError):
        store.set(name, value)
    assert store.as_dict() == {"size": 0, "file": ""}


def test_unsupported_kind():
    with pytest.raises(TypeError):
        ParameterStore([ParamSpec("ratio", float, 0.5)])
