from __future__ import annotations

import threading
from typing import Optional

import structlog
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from application.reconciler import AccrualReconciler, ReconcileReport

logger = structlog.get_logger(__name__)

JOB_ID = "reconcile_accruals"


class ReconcileScheduler:
    """
    Runs `AccrualReconciler.reconcile_once` on a fixed interval.

    Passes never overlap: the job is registered with `max_instances=1` and
    `coalesce=True`, and `run_now` additionally refuses to start while a
    pass is in progress. A tick that arrives during a pass is dropped.
    """

    def __init__(self, reconciler: AccrualReconciler, interval: float) -> None:
        self._reconciler = reconciler
        self._interval = interval
        self._pass_lock = threading.Lock()
        self.scheduler = BackgroundScheduler(timezone="UTC")
        self.is_running = False

    def start(self) -> None:
        if self.is_running:
            logger.warning("reconcile_scheduler_already_running")
            return

        self.scheduler.add_job(
            self.run_now,
            trigger=IntervalTrigger(seconds=self._interval),
            id=JOB_ID,
            name="Pull accrual results for pending orders",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=None,
            replace_existing=True,
        )
        self.scheduler.start()
        self.is_running = True
        logger.info("reconcile_scheduler_started", interval=self._interval)

    def shutdown(self, wait: bool = True) -> None:
        """Stop scheduling; with `wait`, block until the running pass ends."""

        if not self.is_running:
            return
        self.scheduler.shutdown(wait=wait)
        self.is_running = False
        logger.info("reconcile_scheduler_stopped")

    def run_now(self) -> Optional[ReconcileReport]:
        """Run one pass, or return None if a pass is already in progress."""

        if not self._pass_lock.acquire(blocking=False):
            logger.info("reconcile_tick_skipped", reason="pass_in_progress")
            return None
        try:
            return self._reconciler.reconcile_once()
        except Exception:
            # Keep the job scheduled; the next tick starts a fresh pass.
            logger.exception("reconcile_pass_crashed")
            return None
        finally:
            self._pass_lock.release()
