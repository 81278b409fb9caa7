"""Progression error taxonomy.

Each error carries the HTTP status the API boundary should answer with.
Everything except EvaluationError aborts the invocation before commit.
"""

from __future__ import annotations


class ProgressionError(Exception):
    """Base class for errors surfaced to callers of the progression engine."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(ProgressionError):
    """Task, skill, tree or user does not exist."""

    status_code = 404


class ForbiddenError(ProgressionError):
    """Caller does not own the resource."""

    status_code = 403


class AlreadyCompletedError(ProgressionError):
    """The completion guard rejected an already-completed task."""

    status_code = 409


class InvalidRequestError(ProgressionError):
    """Malformed input, rejected before any side effect."""

    status_code = 400


class TransactionFailedError(ProgressionError):
    """Storage conflict or constraint violation; nothing was committed."""

    status_code = 503

    def __init__(self, message: str = "Could not save your progress, please try again.") -> None:
        super().__init__(message)


class EvaluationError(Exception):
    """The quality evaluation service failed or timed out.

    Recovered inside the engine by falling back to the task's base XP.
    """
