"""
Error Taxonomy
==============

Every failure raised by convfeat derives from ``ConvFeatError`` and one
builtin exception type, so callers may catch either.

    UnknownParameterError   unrecognised parameter name          (KeyError)
    InvalidValueError       malformed / out-of-order value,
                            unreadable or malformed file          (ValueError)
    LoadFailureError        network or weights cannot be loaded   (OSError)
    ConfigMismatchError     layer geometry, PCA or scale mismatch (InvalidValueError)
    UsageError              extraction before configuration       (RuntimeError)
    ExtractionError         bad image or engine failure           (RuntimeError)
"""

from __future__ import annotations


class ConvFeatError(Exception):
    """Base class for all convfeat errors."""


class UnknownParameterError(ConvFeatError, KeyError):
    """The parameter name is not recognised by the extractor."""

    def __init__(self, name: str, known: list[str] | None = None):
        self.name = name
        self.known = list(known or [])
        msg = f"Unknown parameter: '{name}'"
        if self.known:
            msg += f". Available: {self.known}"
        super().__init__(msg)

    def __str__(self) -> str:
        # KeyError would repr() the message
        return str(self.args[0])


class InvalidValueError(ConvFeatError, ValueError):
    """The value is not allowed for the parameter (or the file it names is bad)."""


class LoadFailureError(ConvFeatError, OSError):
    """The network structure or weights could not be loaded."""


class ConfigMismatchError(InvalidValueError):
    """Loaded components are inconsistent with each other."""


class UsageError(ConvFeatError, RuntimeError):
    """The extractor was used before it was fully configured."""


class ExtractionError(ConvFeatError, RuntimeError):
    """Feature extraction failed for the given image."""
