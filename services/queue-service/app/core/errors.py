"""
Domain error taxonomy for queue operations.

Routers never build HTTP errors for these themselves; app.main maps each class
to a status code and a structured body so callers can tell validation problems,
missing records and retryable store failures apart.
"""
from typing import Optional


class QueueError(Exception):
    status_code = 500
    error_code = "queue_error"
    retryable = False

    def __init__(self, message: str, *, field: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.field = field


class ValidationError(QueueError):
    status_code = 400
    error_code = "validation_error"


class NotFoundError(QueueError):
    status_code = 404
    error_code = "not_found"


class InvalidTransitionError(QueueError):
    status_code = 409
    error_code = "invalid_transition"

    def __init__(self, current_state: str, attempted_state: str):
        super().__init__(f"Transition from {current_state} to {attempted_state} is not permitted.")
        self.current_state = current_state
        self.attempted_state = attempted_state


class TransientStoreError(QueueError):
    status_code = 503
    error_code = "transient_store_error"
    retryable = True


class CollaboratorFailure(QueueError):
    """Raised inside notification/purchase adapters; never escapes them."""

    status_code = 502
    error_code = "collaborator_failure"
