"""Error kinds raised by the assessment engine.

The HTTP layer maps each kind to a status code; only `ConcurrencyConflictError`
is retried (inside the service) before reaching the caller.
"""


class AssessmentError(Exception):
    """Base class; `kind` is the machine-readable error name returned to clients."""
    kind = "assessment_error"
    status_code = 400

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class ValidationError(AssessmentError):
    """Malformed quiz, question or answer shape. Raised before any mutation."""
    kind = "validation_error"
    status_code = 422


class NotFoundError(AssessmentError):
    kind = "not_found"
    status_code = 404


class StateConflictError(AssessmentError):
    """Operation not valid for the current lifecycle state."""
    kind = "state_conflict"
    status_code = 409


class AttemptLimitExceeded(StateConflictError):
    kind = "attempt_limit_exceeded"


class AttemptAlreadyInProgress(StateConflictError):
    kind = "attempt_already_in_progress"


class ConcurrencyConflictError(AssessmentError):
    """Aggregate version changed between read and commit; retry the whole command."""
    kind = "concurrency_conflict"
    status_code = 409


class PolicyError(AssessmentError):
    kind = "forbidden"
    status_code = 403


class DataIntegrityError(AssessmentError):
    """Stored data cannot be graded (e.g. malformed answer key); nothing is committed."""
    kind = "data_integrity_error"
    status_code = 500
