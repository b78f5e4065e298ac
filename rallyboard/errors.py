"""Errors raised by the results workflow and aggregation engine."""

from __future__ import annotations

from typing import Iterable, List, Optional


class RallyEngineError(Exception):
    """Base class; every subclass is recoverable and meant for the user."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.message}


class ValidationError(RallyEngineError):
    """A state transition precondition is not met.

    ``missing`` lists the participants that still lack a result when the
    failure comes from marking results as completed.
    """

    def __init__(self, message: str, missing: Optional[Iterable[str]] = None):
        super().__init__(message)
        self.missing: List[str] = list(missing or [])

    def to_dict(self) -> dict:
        body = super().to_dict()
        if self.missing:
            body["missing"] = list(self.missing)
        return body


class NotApprovedError(RallyEngineError):
    status_code = 409


class NotFoundError(RallyEngineError):
    status_code = 404


__all__ = [
    "RallyEngineError",
    "ValidationError",
    "NotApprovedError",
    "NotFoundError",
]
