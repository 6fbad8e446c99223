"""
Parameter Store
===============

Named, typed parameters of a feature extractor.

Parameters are declared up front with a kind (``int`` or ``str``) and a
default.  The store rejects unknown names and values of the wrong kind;
key-specific validation (files, ordering) belongs to the extractor, which
runs it before the value is committed.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Iterable, Union

from convfeat.errors import InvalidValueError, UnknownParameterError

ParamValue = Union[int, str]


@dataclass(frozen=True)
class ParamSpec:
    """Declaration of one parameter."""

    name: str
    kind: type
    default: ParamValue
    description: str = ""


class ParameterStore:
    """Current values of a fixed set of declared parameters."""

    def __init__(self, specs: Iterable[ParamSpec]):
        self._specs: dict[str, ParamSpec] = {}
        for spec in specs:
            if spec.kind not in (int, str):
                raise TypeError(f"Unsupported parameter kind for '{spec.name}': {spec.kind}")
            self._specs[spec.name] = spec
        self._values: dict[str, ParamValue] = {s.name: s.default for s in self._specs.values()}

    def __contains__(self, name: object) -> bool:
        return name in self._specs

    def names(self) -> list[str]:
        return list(self._specs)

    def spec(self, name: str) -> ParamSpec:
        try:
            return self._specs[name]
        except KeyError:
            raise UnknownParameterError(name, self.names()) from None

    def get(self, name: str) -> ParamValue:
        self.spec(name)
        return self._values[name]

    def coerce(self, name: str, value: Any) -> ParamValue:
        """Check ``value`` against the declared kind of ``name``.

        Path-like values are accepted for string parameters.

        Raises
        ------
        UnknownParameterError
            ``name`` is not declared.
        InvalidValueError
            ``value`` has the wrong kind.
        """
        spec = self.spec(name)
        if spec.kind is int:
            # bool is an int subclass but never a meaningful size
            if isinstance(value, bool) or not isinstance(value, int):
                raise InvalidValueError(f"Parameter '{name}' expects an int, got {value!r}")
            return int(value)
        if isinstance(value, os.PathLike):
            value = os.fspath(value)
        if not isinstance(value, str):
            raise InvalidValueError(f"Parameter '{name}' expects a string, got {value!r}")
        return value

    def set(self, name: str, value: Any) -> ParamValue:
        value = self.coerce(name, value)
        self._values[name] = value
        return value

    def as_dict(self) -> dict[str, ParamValue]:
        return dict(self._values)
