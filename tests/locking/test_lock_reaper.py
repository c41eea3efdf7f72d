import asyncio
import logging

from efiling.errors import StoreUnavailable
from efiling.ledger.memory_store import MemoryLocksStore
from efiling.locking.manager import LockManager
from efiling.locking.reaper import LockReaper


def test_sweep_removes_only_expired_locks(clock):
    store = MemoryLocksStore()
    manager = LockManager(store, ttl_seconds=60, clock=clock)
    manager.acquire("old", "A")
    clock.advance(45)
    manager.acquire("fresh", "B")
    clock.advance(20)

    reaper = LockReaper(store, clock=clock)
    assert reaper.sweep() == 1
    assert store.get_lock("old") is None
    assert store.get_lock("fresh").holder_id == "B"
    assert reaper.sweep() == 0


def test_sweep_leaves_lock_renewed_mid_sweep(clock):
    store = MemoryLocksStore()
    manager = LockManager(store, ttl_seconds=60, clock=clock)
    manager.acquire("7", "A")
    clock.advance(61)

    class _RacingStore(MemoryLocksStore):
        def list_locks(self):
            snapshot = store.list_locks()
            manager.acquire("7", "B")
            return snapshot

        def delete_lock(self, resource_id, etag):
            return store.delete_lock(resource_id, etag)

    reaper = LockReaper(_RacingStore(), clock=clock)
    assert reaper.sweep() == 0
    assert store.get_lock("7").holder_id == "B"


def test_reaped_lock_fails_renewal_closed(clock):
    store = MemoryLocksStore()
    manager = LockManager(store, ttl_seconds=60, clock=clock)
    manager.acquire("7", "A")
    clock.advance(60)
    LockReaper(store, clock=clock).sweep()
    assert manager.renew("7", "A") is False
    assert store.get_lock("7") is None


class _FailingStore(MemoryLocksStore):
    def __init__(self):
        super().__init__()
        self.calls = 0

    def list_locks(self):
        self.calls += 1
        raise StoreUnavailable("table storage down")


def test_sweep_safely_logs_and_continues(clock, caplog):
    reaper = LockReaper(_FailingStore(), clock=clock)
    with caplog.at_level(logging.ERROR):
        assert reaper.sweep_safely() is None
    assert "reaper.sweep_failed" in caplog.text


def test_run_loop_survives_failures_and_stops_on_shutdown(clock):
    store = _FailingStore()
    reaper = LockReaper(store, clock=clock)

    async def scenario():
        shutdown = asyncio.Event()
        task = asyncio.create_task(reaper.run(shutdown, interval_seconds=0.01))
        await asyncio.sleep(0.1)
        shutdown.set()
        await asyncio.wait_for(task, timeout=2)

    asyncio.run(scenario())
    assert store.calls >= 2


def test_run_loop_sweeps_before_waiting(clock):
    store = MemoryLocksStore()
    manager = LockManager(store, ttl_seconds=1, clock=clock)
    manager.acquire("7", "A")
    clock.advance(5)
    reaper = LockReaper(store, clock=clock)

    async def scenario():
        shutdown = asyncio.Event()
        shutdown.set()
        await reaper.run(shutdown, interval_seconds=60)

    asyncio.run(scenario())
    # shutdown already requested, nothing is swept
    assert store.get_lock("7") is not None

    async def one_sweep():
        shutdown = asyncio.Event()
        task = asyncio.create_task(reaper.run(shutdown, interval_seconds=60))
        await asyncio.sleep(0.05)
        shutdown.set()
        await asyncio.wait_for(task, timeout=2)

    asyncio.run(one_sweep())
    assert store.get_lock("7") is None


def test_runner_reap_command(monkeypatch, capsys):
    from efiling.locking import runner

    monkeypatch.setenv("EFILING_STORAGE_BACKEND", "memory")
    monkeypatch.setattr("sys.argv", ["efiling-reaper", "reap"])
    runner.main()
    assert capsys.readouterr().out.strip() == "removed 0 expired lock(s)"
