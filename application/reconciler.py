from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable

import structlog

from domain.errors import AccrualResponseError, PersistenceError, TransientExternalError
from domain.models import Order
from domain.repositories import AccrualClient, OrderRepository

logger = structlog.get_logger(__name__)


@dataclass
class ReconcileReport:
    """Outcome counters of a single reconciliation pass."""

    checked: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    deferred: int = 0


class AccrualReconciler:
    """
    Pull accrual results for pending orders and apply them to the ledger.

    Each call to `reconcile_once` is one pass over every NEW/PROCESSING
    order. A failure on one order is logged and the pass moves on; the
    order stays pending and is retried on the next pass.
    """

    def __init__(
        self,
        order_repo: OrderRepository,
        accrual_client: AccrualClient,
        deadline: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._order_repo = order_repo
        self._accrual_client = accrual_client
        self._deadline = deadline
        self._clock = clock

    def reconcile_once(self) -> ReconcileReport:
        report = ReconcileReport()
        started = self._clock()
        deadline_at = started + self._deadline

        try:
            orders = self._order_repo.get_pending_orders()
        except PersistenceError as exc:
            logger.error("reconcile_fetch_failed", error=str(exc))
            return report

        for index, order in enumerate(orders):
            remaining = deadline_at - self._clock()
            if remaining <= 0:
                report.deferred = len(orders) - index
                logger.warning(
                    "reconcile_deadline_reached",
                    deadline=self._deadline,
                    deferred=report.deferred,
                )
                break

            report.checked += 1
            self._reconcile_order(order, remaining, report)

        logger.info(
            "reconcile_pass_completed",
            pending=len(orders),
            checked=report.checked,
            updated=report.updated,
            skipped=report.skipped,
            failed=report.failed,
            deferred=report.deferred,
            duration=round(self._clock() - started, 3),
        )
        return report

    def _reconcile_order(self, order: Order, budget: float, report: ReconcileReport) -> None:
        try:
            result = self._accrual_client.get_order(order.number, timeout=budget)
        except TransientExternalError as exc:
            report.failed += 1
            logger.warning("accrual_unavailable", order=order.number, error=str(exc))
            return
        except AccrualResponseError as exc:
            report.failed += 1
            logger.error("accrual_response_invalid", order=order.number, error=str(exc))
            return

        if result is None or not result.is_actionable:
            report.skipped += 1
            return

        new_status = result.to_order_status()
        if new_status == order.status and result.accrual is None:
            # Still PROCESSING on both sides.
            report.skipped += 1
            return

        try:
            applied = self._order_repo.apply_accrual(order.number, new_status, result.accrual)
        except PersistenceError as exc:
            report.failed += 1
            logger.error("accrual_apply_failed", order=order.number, error=str(exc))
            return

        if not applied:
            report.skipped += 1
            return

        report.updated += 1
        logger.info(
            "accrual_applied",
            order=order.number,
            user_id=order.user_id,
            status=new_status.value,
            accrual=str(result.accrual) if result.accrual is not None else None,
        )
