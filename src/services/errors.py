"""
Exceptions shared by the ingestion services.
"""

from __future__ import annotations

from typing import Sequence


class ConfigurationError(RuntimeError):
    """Raised at startup when required settings are missing or invalid."""

    def __init__(self, missing: Sequence[str], detail: str | None = None) -> None:
        self.missing = list(missing)
        message = detail or "Missing required configuration: " + ", ".join(self.missing)
        super().__init__(message)


class ModelCascadeError(RuntimeError):
    """Every model in the cascade failed; carries each model's failure reason."""

    def __init__(self, failures: Sequence[tuple[str, str]]) -> None:
        self.failures = list(failures)
        joined = "; ".join(f"{model}: {reason}" for model, reason in self.failures)
        super().__init__(f"All models failed. Errors: {joined}")


class DuplicateRecordError(RuntimeError):
    """A unique constraint rejected an insert because the record already exists."""


class PipelineCancelled(RuntimeError):
    """The run's cancel token was set."""
