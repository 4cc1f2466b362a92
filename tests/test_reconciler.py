import unittest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import httpx

from application.reconciler import AccrualReconciler
from application.services import get_balance, list_orders, register_user, submit_order
from domain.errors import AccrualResponseError, PersistenceError, TransientExternalError
from domain.models import AccrualResult, AccrualStatus, OrderStatus
from infrastructure.accrual.client import HttpAccrualClient
from tests.in_memory import (
    FakeAccrualClient,
    InMemoryBalanceRepository,
    InMemoryLedger,
    InMemoryOrderRepository,
    InMemoryUserRepository,
    valid_number,
)


class FlakyOrderRepository(InMemoryOrderRepository):
    """Fails `apply_accrual` for the listed numbers."""

    def __init__(self, ledger, failing):
        super().__init__(ledger)
        self.failing = set(failing)

    def apply_accrual(self, number, status, accrual):
        if number in self.failing:
            raise PersistenceError("disk on fire")
        return super().apply_accrual(number, status, accrual)


class FakeClock:
    def __init__(self, step):
        self.now = 0.0
        self.step = step

    def __call__(self):
        value = self.now
        self.now += self.step
        return value


def processed(number, accrual=None):
    return AccrualResult(
        order=number,
        status=AccrualStatus.PROCESSED,
        accrual=Decimal(accrual) if accrual is not None else None,
    )


class AccrualReconcilerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.ledger = InMemoryLedger()
        self.user_repo = InMemoryUserRepository(self.ledger)
        self.order_repo = InMemoryOrderRepository(self.ledger)
        self.balance_repo = InMemoryBalanceRepository(self.ledger)
        self.user = register_user("alice", "pw", self.user_repo)

    def add_orders(self, count, start=500):
        base = datetime(2024, 1, 1, tzinfo=timezone.utc)
        numbers = []
        for i in range(count):
            number = valid_number(start + i)
            self.order_repo.add_order(self.user.id, number, base + timedelta(seconds=i))
            numbers.append(number)
        return numbers

    def balance(self):
        return get_balance("alice", self.user_repo, self.balance_repo)

    def test_round_trip_processed_with_accrual(self):
        number = "79927398713"
        submit_order("alice", number, self.user_repo, self.order_repo)
        orders = list_orders("alice", self.user_repo, self.order_repo)
        self.assertEqual([(o.number, o.status) for o in orders], [(number, OrderStatus.NEW)])

        client = FakeAccrualClient({number: processed(number, 500)})
        report = AccrualReconciler(self.order_repo, client).reconcile_once()

        self.assertEqual(report.updated, 1)
        order = list_orders("alice", self.user_repo, self.order_repo)[0]
        self.assertEqual(order.status, OrderStatus.PROCESSED)
        self.assertEqual(order.accrual, Decimal("500"))
        self.assertEqual(self.balance().current, Decimal("500"))

    def test_registered_and_unknown_orders_are_skipped(self):
        registered, unknown = self.add_orders(2)
        client = FakeAccrualClient({
            registered: AccrualResult(order=registered, status=AccrualStatus.REGISTERED),
            unknown: None,
        })

        report = AccrualReconciler(self.order_repo, client).reconcile_once()

        self.assertEqual((report.checked, report.skipped, report.updated), (2, 2, 0))
        self.assertTrue(all(o.status == OrderStatus.NEW for o in self.ledger.orders.values()))

    def test_processing_and_invalid_transitions(self):
        to_processing, to_invalid = self.add_orders(2)
        client = FakeAccrualClient({
            to_processing: AccrualResult(order=to_processing, status=AccrualStatus.PROCESSING),
            to_invalid: AccrualResult(order=to_invalid, status=AccrualStatus.INVALID),
        })
        reconciler = AccrualReconciler(self.order_repo, client)

        reconciler.reconcile_once()

        self.assertEqual(self.ledger.orders[to_processing].status, OrderStatus.PROCESSING)
        self.assertEqual(self.ledger.orders[to_invalid].status, OrderStatus.INVALID)
        self.assertEqual(self.balance().current, Decimal("0"))

        # PROCESSING stays eligible, INVALID is never asked about again.
        client.calls.clear()
        reconciler.reconcile_once()
        self.assertEqual([number for number, _ in client.calls], [to_processing])

    def test_processed_order_is_not_credited_twice(self):
        (number,) = self.add_orders(1)
        client = FakeAccrualClient({number: processed(number, "120.5")})
        reconciler = AccrualReconciler(self.order_repo, client)

        reconciler.reconcile_once()
        reconciler.reconcile_once()
        # A stale pass that still holds the order applies nothing.
        self.assertFalse(
            self.order_repo.apply_accrual(number, OrderStatus.PROCESSED, Decimal("120.5"))
        )

        self.assertEqual(self.balance().current, Decimal("120.5"))

    def test_per_order_failures_do_not_abort_the_pass(self):
        down, garbled, ok = self.add_orders(3)
        client = FakeAccrualClient({
            down: TransientExternalError("connection refused"),
            garbled: AccrualResponseError("not json"),
            ok: processed(ok, 10),
        })

        report = AccrualReconciler(self.order_repo, client).reconcile_once()

        self.assertEqual((report.checked, report.failed, report.updated), (3, 2, 1))
        self.assertEqual(self.ledger.orders[down].status, OrderStatus.NEW)
        self.assertEqual(self.ledger.orders[ok].status, OrderStatus.PROCESSED)
        self.assertEqual(self.balance().current, Decimal("10"))

    def test_non_finite_accrual_fails_only_that_order(self):
        garbled, ok = self.add_orders(2)
        bodies = {
            f"/api/orders/{garbled}": f'{{"order": "{garbled}", "status": "PROCESSED", "accrual": NaN}}',
            f"/api/orders/{ok}": f'{{"order": "{ok}", "status": "PROCESSED", "accrual": 10}}',
        }

        def handler(request):
            return httpx.Response(
                200,
                headers={"Content-Type": "application/json"},
                text=bodies[request.url.path],
            )

        client = HttpAccrualClient(
            "http://accrual.test",
            timeout=1.0,
            retry_attempts=1,
            transport=httpx.MockTransport(handler),
        )
        try:
            report = AccrualReconciler(self.order_repo, client).reconcile_once()
        finally:
            client.close()

        self.assertEqual((report.checked, report.failed, report.updated), (2, 1, 1))
        self.assertEqual(self.ledger.orders[garbled].status, OrderStatus.NEW)
        self.assertEqual(self.ledger.orders[ok].status, OrderStatus.PROCESSED)
        self.assertEqual(self.balance().current, Decimal("10"))

    def test_persistence_failure_skips_only_that_order(self):
        broken, ok = self.add_orders(2)
        order_repo = FlakyOrderRepository(self.ledger, failing=[broken])
        client = FakeAccrualClient({broken: processed(broken, 7), ok: processed(ok, 3)})

        report = AccrualReconciler(order_repo, client).reconcile_once()

        self.assertEqual((report.failed, report.updated), (1, 1))
        self.assertEqual(self.ledger.orders[broken].status, OrderStatus.NEW)
        self.assertEqual(self.balance().current, Decimal("3"))

    def test_deadline_defers_remaining_orders(self):
        numbers = self.add_orders(5)
        client = FakeAccrualClient({n: processed(n, 1) for n in numbers})
        # Each clock read advances one second; a 4 second budget covers
        # only the first orders.
        reconciler = AccrualReconciler(self.order_repo, client, deadline=4.0, clock=FakeClock(1.0))

        report = reconciler.reconcile_once()

        self.assertGreater(report.deferred, 0)
        self.assertEqual(report.checked + report.deferred, 5)
        self.assertEqual(len(client.calls), report.checked)
        # Every call gets at most the remaining budget.
        self.assertTrue(all(0 < timeout <= 4.0 for _, timeout in client.calls))

        # The deferred orders are picked up by the next pass.
        AccrualReconciler(self.order_repo, client).reconcile_once()
        self.assertEqual(self.balance().current, Decimal("5"))


if __name__ == "__main__":
    unittest.main()
