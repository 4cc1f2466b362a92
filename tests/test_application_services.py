import unittest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from application.services import (
    authenticate_user,
    get_balance,
    list_orders,
    list_withdrawals,
    register_user,
    submit_order,
    withdraw,
)
from domain.errors import (
    AuthenticationError,
    ConflictError,
    InsufficientFundsError,
    InvalidOrderNumberError,
    UserNotFoundError,
    ValidationError,
)
from domain.models import OrderStatus, SubmitOutcome
from tests.in_memory import (
    InMemoryBalanceRepository,
    InMemoryLedger,
    InMemoryOrderRepository,
    InMemoryUserRepository,
    valid_number,
)


class UntouchableRepository:
    """Fails the test if any storage method is called."""

    def __getattr__(self, name):
        raise AssertionError(f"storage was touched: {name}")


class ApplicationServicesTests(unittest.TestCase):
    def setUp(self) -> None:
        self.ledger = InMemoryLedger()
        self.user_repo = InMemoryUserRepository(self.ledger)
        self.order_repo = InMemoryOrderRepository(self.ledger)
        self.balance_repo = InMemoryBalanceRepository(self.ledger)
        self.alice = register_user("alice", "s3cret", self.user_repo)
        self.bob = register_user("bob", "hunter2", self.user_repo)

    def credit(self, user, amount):
        number = valid_number(len(self.ledger.orders) + 900)
        self.order_repo.add_order(user.id, number, datetime.now(timezone.utc))
        self.order_repo.apply_accrual(number, OrderStatus.PROCESSED, Decimal(amount))

    def test_register_stores_hash_not_password(self):
        self.assertNotEqual(self.alice.password_hash, "s3cret")
        self.assertEqual(get_balance("alice", self.user_repo, self.balance_repo).current, 0)

    def test_register_duplicate_login_conflicts(self):
        with self.assertRaises(ConflictError):
            register_user("alice", "other", self.user_repo)

    def test_register_rejects_empty_credentials(self):
        with self.assertRaises(ValidationError):
            register_user("", "pw", self.user_repo)
        with self.assertRaises(ValidationError):
            register_user("carol", "", self.user_repo)

    def test_authenticate(self):
        user = authenticate_user("alice", "s3cret", self.user_repo)
        self.assertEqual(user.id, self.alice.id)
        with self.assertRaises(AuthenticationError):
            authenticate_user("alice", "wrong", self.user_repo)
        with self.assertRaises(AuthenticationError):
            authenticate_user("nobody", "s3cret", self.user_repo)

    def test_submit_order_outcomes(self):
        number = "79927398713"
        self.assertEqual(
            submit_order("alice", number, self.user_repo, self.order_repo),
            SubmitOutcome.ACCEPTED,
        )
        self.assertEqual(
            submit_order("alice", number, self.user_repo, self.order_repo),
            SubmitOutcome.ALREADY_OWNED_BY_SAME_USER,
        )
        self.assertEqual(
            submit_order("bob", number, self.user_repo, self.order_repo),
            SubmitOutcome.OWNED_BY_OTHER,
        )
        # No duplicate row, owner unchanged.
        self.assertEqual(len(self.ledger.orders), 1)
        self.assertEqual(self.ledger.orders[number].user_id, self.alice.id)

    def test_submit_strips_surrounding_whitespace(self):
        outcome = submit_order("alice", "79927398713\n", self.user_repo, self.order_repo)
        self.assertEqual(outcome, SubmitOutcome.ACCEPTED)
        self.assertIn("79927398713", self.ledger.orders)

    def test_invalid_number_rejected_before_storage(self):
        untouchable = UntouchableRepository()
        for number in ("79927398710", "abc", "", "12 34"):
            with self.assertRaises(InvalidOrderNumberError):
                submit_order("alice", number, untouchable, untouchable)
            with self.assertRaises(InvalidOrderNumberError):
                withdraw("alice", number, 10, untouchable, untouchable)

    def test_unknown_user(self):
        with self.assertRaises(UserNotFoundError):
            submit_order("ghost", "79927398713", self.user_repo, self.order_repo)
        with self.assertRaises(UserNotFoundError):
            get_balance("ghost", self.user_repo, self.balance_repo)

    def test_list_orders_newest_first_and_empty(self):
        self.assertEqual(list_orders("alice", self.user_repo, self.order_repo), [])

        base = datetime(2024, 1, 1, tzinfo=timezone.utc)
        numbers = [valid_number(100 + i) for i in range(3)]
        for offset, number in enumerate(numbers):
            self.order_repo.add_order(self.alice.id, number, base + timedelta(minutes=offset))

        orders = list_orders("alice", self.user_repo, self.order_repo)
        self.assertEqual([o.number for o in orders], list(reversed(numbers)))
        self.assertTrue(all(o.status == OrderStatus.NEW for o in orders))
        self.assertEqual(list_orders("bob", self.user_repo, self.order_repo), [])

    def test_withdraw_debits_and_records(self):
        self.credit(self.alice, "729.98")

        withdrawal = withdraw("alice", "2377225624", "100.5", self.user_repo, self.balance_repo)

        self.assertEqual(withdrawal.sum, Decimal("100.50"))
        balance = get_balance("alice", self.user_repo, self.balance_repo)
        self.assertEqual(balance.current, Decimal("629.48"))
        self.assertEqual(balance.withdrawn, Decimal("100.50"))
        history = list_withdrawals("alice", self.user_repo, self.balance_repo)
        self.assertEqual([w.order for w in history], ["2377225624"])

    def test_withdraw_insufficient_leaves_state_unchanged(self):
        self.credit(self.alice, "50")

        with self.assertRaises(InsufficientFundsError):
            withdraw("alice", "2377225624", 51, self.user_repo, self.balance_repo)

        balance = get_balance("alice", self.user_repo, self.balance_repo)
        self.assertEqual(balance.current, Decimal("50"))
        self.assertEqual(balance.withdrawn, Decimal("0"))
        self.assertEqual(list_withdrawals("alice", self.user_repo, self.balance_repo), [])

    def test_withdraw_rejects_non_positive_or_malformed_amount(self):
        self.credit(self.alice, "50")
        for amount in (0, -5, "abc", None, True, "NaN", "-NaN", "sNaN", "Infinity", float("nan")):
            with self.subTest(amount=amount):
                with self.assertRaises(ValidationError):
                    withdraw("alice", "2377225624", amount, self.user_repo, self.balance_repo)
        self.assertEqual(get_balance("alice", self.user_repo, self.balance_repo).current, Decimal("50"))

    def test_withdraw_rejects_sub_cent_amount(self):
        self.credit(self.alice, "50")
        for amount in ("10.005", "0.001", 10.005):
            with self.subTest(amount=amount):
                with self.assertRaises(ValidationError):
                    withdraw("alice", "2377225624", amount, self.user_repo, self.balance_repo)

        withdrawal = withdraw("alice", "2377225624", "10.50", self.user_repo, self.balance_repo)
        self.assertEqual(withdrawal.sum, Decimal("10.50"))
        self.assertEqual(get_balance("alice", self.user_repo, self.balance_repo).current, Decimal("39.50"))

    def test_withdrawals_newest_first(self):
        self.credit(self.alice, "100")
        first = withdraw("alice", "2377225624", 10, self.user_repo, self.balance_repo)
        second = withdraw("alice", "9278923470", 20, self.user_repo, self.balance_repo)

        history = list_withdrawals("alice", self.user_repo, self.balance_repo)
        self.assertEqual([w.order for w in history], [second.order, first.order])
        self.assertGreaterEqual(history[0].processed_at, history[1].processed_at)


if __name__ == "__main__":
    unittest.main()
