"""Shared error types for nanomem.

Goal: don't silently turn infrastructure failures into empty results.
Store and recall failures travel back to the caller as ``Result`` values;
extraction-path failures are contained where they happen.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")


class NanomemError(Exception):
    """Base error for nanomem."""


class ValidationError(NanomemError):
    """Malformed input to store/update/supersede."""


class StorageError(NanomemError):
    """SQLite I/O or constraint failure."""


class EmbeddingError(NanomemError):
    """Embedding provider failed or returned a vector of the wrong length."""


class ClassificationError(NanomemError):
    """Classifier LLM call failed or timed out. Never reaches the caller."""


class NotFoundError(NanomemError):
    """Operation on an unknown memory id."""


class ProviderCallError(NanomemError):
    """LLM/provider call failed (network/auth/model/etc.)."""


@dataclass(frozen=True)
class Result(Generic[T]):
    """Outcome of a public store/recall operation."""

    ok: bool
    value: T | None = None
    error: NanomemError | None = None

    @classmethod
    def success(cls, value: T | None = None) -> "Result[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: NanomemError) -> "Result[T]":
        return cls(ok=False, error=error)

    def unwrap(self) -> T:
        """Return the value or raise the carried error."""
        if not self.ok:
            raise self.error  # type: ignore[misc]
        return self.value  # type: ignore[return-value]
