"""Execution engine error taxonomy.

Job-level errors (validation, provider, analysis) are recorded on the
execution record and never escape a job. PersistenceError is the only one
allowed to abort a whole run.
"""

from __future__ import annotations

from enum import Enum


class ProviderErrorKind(str, Enum):
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    PROVIDER_ERROR = "provider_error"
    UNKNOWN = "unknown"


class ExecutionError(Exception):
    """Base class for engine errors."""


class ValidationError(ExecutionError):
    """A referenced business, prompt or provider no longer exists."""


class ProviderError(ExecutionError):
    """Classified failure from a language-model provider."""

    def __init__(self, kind: ProviderErrorKind, message: str, status_code: int = 0):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status_code = status_code

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"

    def __repr__(self) -> str:
        return f"ProviderError(kind={self.kind.value!r}, message={self.message!r})"


class AnalysisError(ExecutionError):
    """Structured analysis output was missing or did not match the schema."""


class PersistenceError(ExecutionError):
    """The execution store could not be read or written."""
