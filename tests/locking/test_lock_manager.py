import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from efiling.errors import ConcurrencyError, InvalidInput
from efiling.ledger.memory_store import MemoryLocksStore
from efiling.ledger.models import Lock
from efiling.locking.manager import LockManager, require_identity, require_resource_id
from efiling.shared.clock import parse_iso


def _manager(clock, store=None, ttl=60):
    return LockManager(store or MemoryLocksStore(), ttl_seconds=ttl, clock=clock)


def test_acquire_then_other_holder_denied(clock):
    manager = _manager(clock)
    assert manager.acquire("7", "A") is True
    assert manager.acquire("7", "B") is False
    assert manager.get_lock("7").holder_id == "A"


def test_acquire_by_holder_is_idempotent_and_extends(clock):
    manager = _manager(clock)
    manager.acquire("7", "A")
    first = manager.get_lock("7")

    clock.advance(30)
    assert manager.acquire("7", "A") is True
    second = manager.get_lock("7")
    assert second.acquired_at == first.acquired_at
    assert parse_iso(second.expires_at) > parse_iso(first.expires_at)


def test_renew_by_non_holder_is_lock_lost(clock):
    manager = _manager(clock)
    manager.acquire("7", "A")
    assert manager.renew("7", "B") is False
    assert manager.get_lock("7").holder_id == "A"


def test_renew_after_expiry_is_lock_lost(clock):
    manager = _manager(clock)
    manager.acquire("7", "A")
    clock.advance(60)
    assert manager.renew("7", "A") is False


def test_renew_never_recreates_a_missing_lock(clock):
    store = MemoryLocksStore()
    manager = _manager(clock, store)
    assert manager.renew("7", "A") is False
    assert store.get_lock("7") is None


def test_release_by_non_holder_is_noop(clock):
    manager = _manager(clock)
    manager.acquire("7", "A")
    manager.release("7", "B")
    assert manager.get_lock("7").holder_id == "A"
    manager.release("7", "A")
    assert manager.get_lock("7") is None
    manager.release("7", "A")


def test_expiry_boundary_is_inclusive(clock):
    manager = _manager(clock)
    manager.acquire("7", "A")
    clock.advance(59)
    assert manager.is_locked_by_other("7", "B") is True
    clock.advance(1)
    assert manager.is_locked_by_other("7", "B") is False


def test_lock_scenario_takeover_after_ttl(clock):
    manager = _manager(clock)
    assert manager.acquire("7", "A") is True
    assert manager.acquire("7", "B") is False
    assert manager.renew("7", "A") is True
    clock.advance(61)
    assert manager.acquire("7", "B") is True
    assert manager.get_lock("7").holder_id == "B"
    assert manager.renew("7", "A") is False


def test_is_locked_by_other_ignores_own_lock(clock):
    manager = _manager(clock)
    manager.acquire("7", "A")
    assert manager.is_locked_by_other("7", "A") is False
    assert manager.is_locked_by_other("8", "A") is False


def test_list_active_skips_expired(clock):
    manager = _manager(clock)
    manager.acquire("1", "A")
    clock.advance(40)
    manager.acquire("2", "B")
    clock.advance(30)
    assert [lock.resource_id for lock in manager.list_active()] == ["2"]


def test_concurrent_acquire_grants_exactly_one(clock):
    for round_no in range(20):
        manager = _manager(clock)
        barrier = threading.Barrier(8)

        def attempt(holder):
            barrier.wait()
            return manager.acquire(f"r{round_no}", holder)

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(attempt, [f"user{i}" for i in range(8)]))
        assert results.count(True) == 1


def test_concurrent_takeover_of_expired_lock_grants_exactly_one(clock):
    store = MemoryLocksStore()
    manager = _manager(clock, store)
    manager.acquire("7", "stale")
    clock.advance(120)
    barrier = threading.Barrier(6)

    def attempt(holder):
        barrier.wait()
        return manager.acquire("7", holder)

    with ThreadPoolExecutor(max_workers=6) as pool:
        results = list(pool.map(attempt, [f"user{i}" for i in range(6)]))
    assert results.count(True) == 1
    assert store.get_lock("7").holder_id != "stale"


class _AlwaysConflictingStore(MemoryLocksStore):
    def replace_lock(self, lock: Lock, etag: str) -> Lock:
        raise ConcurrencyError("etag mismatch")


def test_acquire_gives_up_after_bounded_contention(clock):
    store = _AlwaysConflictingStore()
    manager = _manager(clock, store)
    manager.acquire("7", "A")
    clock.advance(120)
    assert manager.acquire("7", "B") is False


def test_require_identity_rejects_blank():
    with pytest.raises(InvalidInput):
        require_identity("  ", "holder_id")
    with pytest.raises(InvalidInput):
        require_identity(None, "holder_id")
    assert require_identity(" A ", "holder_id") == "A"


@pytest.mark.parametrize("resource_id", ["a/b", "a\\b", "a#b", "a?b", "a\tb", "a\x7fb"])
def test_resource_id_rejects_table_key_characters(resource_id):
    with pytest.raises(InvalidInput):
        require_resource_id(resource_id)


def test_resource_id_accepts_plain_ids():
    assert require_resource_id(" 7f3a-instruction ") == "7f3a-instruction"
