"""Exceptions raised by the deduplication engine.

Per-pair and per-group failures are collected into run summaries; only
``DedupInfrastructureError`` is allowed to escape the public entry points.
"""

from __future__ import annotations

from typing import Any


class DedupError(Exception):
    """Base exception for all deduplication errors."""

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            return f"{self.message} | context={self.context}"
        return self.message


class DedupInfrastructureError(DedupError):
    """The run cannot proceed at all (e.g. the listing window is unreadable)."""


class MergeError(DedupError):
    """A group merge failed and was rolled back."""


class MergeConflictError(MergeError):
    """A group member disappeared or was superseded before the merge ran."""


class InvalidTransitionError(DedupError):
    """A candidate status change violates the candidate state machine."""


class CandidateNotFoundError(DedupError):
    pass


class ListingNotFoundError(DedupError):
    pass
