"""Domain errors raised by the workflow services.

Every error carries the HTTP status the API layer answers with, so route
handlers never translate them one by one.
"""
from typing import Optional


class WorkflowError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(WorkflowError):
    """A required field is missing or malformed."""

    status_code = 400


class NotFoundError(WorkflowError):
    status_code = 404


class PreconditionError(WorkflowError):
    """The record is not in the stage the operation starts from."""

    status_code = 409


class ConflictError(WorkflowError):
    """A lot was already taken by another buyer."""

    status_code = 409

    def __init__(self, message: str, *, reason: str = "sold_out", winning_buyer: Optional[str] = None):
        super().__init__(message)
        self.reason = reason
        self.winning_buyer = winning_buyer


class NotificationDispatchFailure(Exception):
    """Raised by notification sinks; the dispatcher logs and drops it."""
