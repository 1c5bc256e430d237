"""
Rollout pipeline errors.

NotFound, InvalidArgument, Conflict and InvalidState are caller-facing and
terminal: callers must not retry them. DependencyFailure wraps persistence
and distribution-channel failures.
"""


class RolloutError(Exception):
    """Base class for every error raised by the rollout pipeline."""

    status_code = 500
    code = "rollout_error"

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.message, "context": self.context}


class NotFound(RolloutError):
    """A strategy update, rollout plan or deployment record does not exist."""

    status_code = 404
    code = "not_found"


class InvalidArgument(RolloutError):
    """Missing field, unknown decision/action, or an illegal patch."""

    status_code = 400
    code = "invalid_argument"


class Conflict(RolloutError):
    """A conditional write lost: the stored row no longer matched the expected state."""

    status_code = 409
    code = "conflict"


class InvalidState(RolloutError):
    """The operation is not supported from the record's current status."""

    status_code = 409
    code = "invalid_state"


class DependencyFailure(RolloutError):
    """Persistence or distribution channel call failed."""

    status_code = 502
    code = "dependency_failure"
