"""Error taxonomy for deal operations.

Each error carries a stable ``code`` the transport layer maps to its own
status codes. Validation and state-machine errors are raised before any
write, so a caller that sees one knows the stored deal is unchanged.
"""


class DealError(Exception):
    code = "internal"
    http_status = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.message}


class Unauthenticated(DealError):
    code = "unauthenticated"
    http_status = 401


class PermissionDenied(DealError):
    code = "permission-denied"
    http_status = 403


class NotFound(DealError):
    code = "not-found"
    http_status = 404


class InvalidArgument(DealError):
    code = "invalid-argument"
    http_status = 400


class AlreadyExists(DealError):
    code = "already-exists"
    http_status = 409


class FailedPrecondition(DealError):
    code = "failed-precondition"
    http_status = 412


class DeadlineExceeded(DealError):
    code = "deadline-exceeded"
    http_status = 410


class ConcurrentModification(DealError):
    """Compare-and-swap on the stored deal missed; the read is stale."""
    code = "aborted"
    http_status = 409


class TransitionRejected(FailedPrecondition):
    """Event is not legal for the deal's current status."""

    def __init__(self, status, event, message: str = ""):
        self.status = status
        self.event = event
        super().__init__(message or f"Cannot {event.value} a deal in status {status.value}")


class DealTypeError(InvalidArgument):
    """Deal type name or leg-kind combination outside the closed mapping."""
