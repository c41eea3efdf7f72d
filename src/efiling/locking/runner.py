import argparse
import signal
import threading

from efiling.config.settings import AppSettings
from efiling.ledger.stores import build_stores
from efiling.shared.logging import get_logger, log_event

from .reaper import LockReaper

logger = get_logger("efiling.locking.runner")


def _build_reaper() -> LockReaper:
    settings = AppSettings.from_env()
    stores = build_stores(settings)
    return LockReaper(stores.locks)


def reap_once() -> int:
    return _build_reaper().sweep()


def loop(interval: float) -> None:
    reaper = _build_reaper()
    stop = threading.Event()

    def _stop(signum, _frame) -> None:
        log_event(logger, "reaper.signal", signal=signum)
        stop.set()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)

    log_event(logger, "reaper.loop_started", interval_seconds=interval)
    while not stop.is_set():
        reaper.sweep_safely()
        stop.wait(interval)
    log_event(logger, "reaper.loop_stopped")


def main() -> None:
    parser = argparse.ArgumentParser(description="Instruction lock reaper")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("reap")

    loop_parser = sub.add_parser("loop")
    loop_parser.add_argument("--interval", type=float, default=None)

    args = parser.parse_args()

    if args.command == "reap":
        removed = reap_once()
        print(f"removed {removed} expired lock(s)")
    elif args.command == "loop":
        interval = args.interval
        if interval is None:
            interval = AppSettings.from_env().reaper_interval_seconds
        loop(interval)


if __name__ == "__main__":
    main()
