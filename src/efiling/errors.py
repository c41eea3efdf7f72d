"""Error taxonomy for the instruction workflow core.

Lock contention (denied acquire, lost renewal) is never raised; it is
returned as a value by the lock manager and the workflow service.
"""

from typing import Optional


class EfilingError(RuntimeError):
    pass


class InvalidInput(EfilingError):
    pass


class NotFound(EfilingError):
    pass


class Forbidden(EfilingError):
    pass


class InvalidTransition(EfilingError):
    def __init__(self, action: str, role: str, status: Optional[str], reason: Optional[str] = None) -> None:
        self.action = action
        self.role = role
        self.status = status
        message = reason or f"action {action!r} is not allowed for role {role!r} from status {status!r}"
        super().__init__(message)


class ConcurrencyError(EfilingError):
    """Raised by stores when an etag or insert-if-absent precondition fails."""


class StoreUnavailable(EfilingError):
    pass
