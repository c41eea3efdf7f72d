"""Lease-based edit locks for instructions.

One lock row per resource id. Every write is either an insert-if-absent or an
etag-conditional replace/delete, so the store decides races between callers;
a lost compare-and-swap re-reads the row and re-decides.
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional

from efiling.errors import ConcurrencyError, InvalidInput
from efiling.ledger.interfaces import LocksStore
from efiling.ledger.models import Lock
from efiling.shared.clock import Clock, parse_iso, utc_now
from efiling.shared.logging import get_logger, log_event

logger = get_logger("efiling.locking")

DEFAULT_TTL_SECONDS = 60
DEFAULT_MAX_ATTEMPTS = 5


class LockOutcome(str, Enum):
    GRANTED = "GRANTED"
    DENIED = "DENIED"


class RenewOutcome(str, Enum):
    RENEWED = "RENEWED"
    LOCK_LOST = "LOCK_LOST"


def require_identity(value: Optional[str], field: str) -> str:
    if value is None or not str(value).strip():
        raise InvalidInput(f"{field} is required")
    return str(value).strip()


# characters Azure Table storage refuses in PartitionKey and RowKey
FORBIDDEN_KEY_CHARS = frozenset("/\\#?")


def require_resource_id(value: Optional[str], field: str = "resource_id") -> str:
    value = require_identity(value, field)
    if any(char in FORBIDDEN_KEY_CHARS or ord(char) < 0x20 or 0x7F <= ord(char) <= 0x9F for char in value):
        raise InvalidInput(f"{field} must not contain '/', '\\', '#', '?' or control characters")
    return value


def is_expired(lock: Lock, now: datetime) -> bool:
    return parse_iso(lock.expires_at) <= now


class LockManager:
    def __init__(
        self,
        store: LocksStore,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Clock = utc_now,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        self._store = store
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock
        self._max_attempts = max_attempts

    @property
    def ttl_seconds(self) -> int:
        return int(self._ttl.total_seconds())

    def _lease(self, resource_id: str, holder_id: str, acquired_at: Optional[str] = None) -> Lock:
        now = self._clock()
        return Lock(
            resource_id=resource_id,
            holder_id=holder_id,
            acquired_at=acquired_at or now.isoformat(),
            expires_at=(now + self._ttl).isoformat(),
        )

    def acquire(self, resource_id: str, holder_id: str) -> bool:
        """Grant or refresh the lease unless another holder has a live one."""
        for _ in range(self._max_attempts):
            current = self._store.get_lock(resource_id)
            try:
                if current is None:
                    self._store.create_lock(self._lease(resource_id, holder_id))
                    log_event(logger, "lock.acquired", resource_id=resource_id, holder_id=holder_id)
                    return True

                expired = is_expired(current, self._clock())
                if current.holder_id != holder_id and not expired:
                    log_event(
                        logger,
                        "lock.denied",
                        resource_id=resource_id,
                        holder_id=holder_id,
                        current_holder=current.holder_id,
                    )
                    return False

                if current.holder_id == holder_id and not expired:
                    lease = self._lease(resource_id, holder_id, acquired_at=current.acquired_at)
                    self._store.replace_lock(lease, current.etag or "")
                    log_event(logger, "lock.refreshed", resource_id=resource_id, holder_id=holder_id)
                    return True

                self._store.replace_lock(self._lease(resource_id, holder_id), current.etag or "")
                log_event(
                    logger,
                    "lock.taken_over",
                    resource_id=resource_id,
                    holder_id=holder_id,
                    previous_holder=current.holder_id,
                )
                return True
            except ConcurrencyError:
                continue
        log_event(logger, "lock.contention_exhausted", resource_id=resource_id, holder_id=holder_id)
        return False

    def renew(self, resource_id: str, holder_id: str) -> bool:
        """Heartbeat. Never recreates a lock that expired, was reaped or was taken over."""
        for _ in range(self._max_attempts):
            current = self._store.get_lock(resource_id)
            if current is None or current.holder_id != holder_id or is_expired(current, self._clock()):
                log_event(logger, "lock.lost", resource_id=resource_id, holder_id=holder_id)
                return False
            lease = self._lease(resource_id, holder_id, acquired_at=current.acquired_at)
            try:
                self._store.replace_lock(lease, current.etag or "")
            except ConcurrencyError:
                continue
            log_event(logger, "lock.renewed", resource_id=resource_id, holder_id=holder_id)
            return True
        return False

    def release(self, resource_id: str, holder_id: str) -> None:
        for _ in range(self._max_attempts):
            current = self._store.get_lock(resource_id)
            if current is None or current.holder_id != holder_id:
                return
            if self._store.delete_lock(resource_id, current.etag or ""):
                log_event(logger, "lock.released", resource_id=resource_id, holder_id=holder_id)
                return

    def is_locked_by_other(self, resource_id: str, caller_id: str) -> bool:
        current = self.get_lock(resource_id)
        return current is not None and current.holder_id != caller_id

    def get_lock(self, resource_id: str) -> Optional[Lock]:
        current = self._store.get_lock(resource_id)
        if current is None or is_expired(current, self._clock()):
            return None
        return current

    def list_active(self) -> List[Lock]:
        now = self._clock()
        return [lock for lock in self._store.list_locks() if not is_expired(lock, now)]
