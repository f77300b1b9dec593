"""Periodic subscription maintenance.

Runs every WORKER_INTERVAL_SECONDS: plan sync, store cancellation sweeps,
grace and expiry sweeps, status sync, orphan cleanup and the free credit
reset. Each task gets its own session and commit so one failure does not
undo the others.
"""
import logging
import signal
import sys
import threading

from imaginaryverse.core.config import settings
from imaginaryverse.db.session import SessionLocal, engine
from imaginaryverse.services.orchestrator import SubscriptionService

logger = logging.getLogger("imaginaryverse.worker")

TASKS = (
    ("plan_sync", lambda service: service.sync_plans()),
    ("cancellation_sweep", lambda service: service.check_cancellations()),
    ("grace_period_sweep", lambda service: service.process_grace_period_subscriptions()),
    ("expiry_sweep", lambda service: service.process_expired_subscriptions()),
    ("status_sync", lambda service: service.sync_local_status()),
    ("orphan_cleanup", lambda service: service.cleanup_orphans()),
    # idempotent per day, so running it every tick also covers midnight
    ("free_credit_reset", lambda service: service.reset_free_credits()),
)


def run_task(name, task, *, session_factory=SessionLocal, service_factory=SubscriptionService) -> bool:
    db = session_factory()
    try:
        result = task(service_factory(db))
        db.commit()
        logger.info("ok: %s %s", name, result)
        return True
    except Exception:
        db.rollback()
        logger.exception("task %s failed", name)
        return False
    finally:
        db.close()


def run_once(*, session_factory=SessionLocal, service_factory=SubscriptionService) -> dict[str, bool]:
    return {
        name: run_task(name, task, session_factory=session_factory, service_factory=service_factory)
        for name, task in TASKS
    }


class SubscriptionWorker:
    def __init__(self, *, interval: float | None = None, shutdown_wait: float | None = None, run=run_once):
        self.interval = settings.WORKER_INTERVAL_SECONDS if interval is None else interval
        self.shutdown_wait = settings.WORKER_SHUTDOWN_WAIT_SECONDS if shutdown_wait is None else shutdown_wait
        self.run = run
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            logger.warning("worker is already running")
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="subscription-worker", daemon=True)
        self._thread.start()

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run()
            except Exception:
                logger.exception("worker run failed")
            self._stop_event.wait(timeout=self.interval)

    def stop(self) -> bool:
        """Stop scheduling runs and wait briefly for the current one. True if it finished."""
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=self.shutdown_wait)
            if self._thread.is_alive():
                logger.warning("in-flight run still busy after %.1fs, exiting anyway", self.shutdown_wait)
                return False
        return True


def main() -> int:
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    worker = SubscriptionWorker()
    shutdown = threading.Event()

    def _on_signal(signum, frame):
        logger.info("received signal %s, shutting down", signum)
        shutdown.set()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    worker.start()
    logger.info("subscription worker started (interval=%ss)", worker.interval)
    shutdown.wait()
    worker.stop()
    engine.dispose()
    logger.info("subscription worker stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
