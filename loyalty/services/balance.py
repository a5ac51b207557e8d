# loyalty/services/balance.py
import logging
from decimal import Decimal
from time import perf_counter
from typing import List
from uuid import UUID

from loyalty.errors import (
    DuplicateWithdrawal, InsufficientFunds, InvalidAmount, InvalidOrderNumber, LoyaltyError,
)
from loyalty.luhn import is_valid
from loyalty.metrics import withdraw_latency, withdrawals_total
from loyalty.models import Balance, Operation, fits_amount_column
from loyalty.store import LedgerStore

logger = logging.getLogger("loyalty.balance")


class BalanceService:
    def __init__(self, store: LedgerStore):
        self.store = store

    def get_balance(self, user_id: UUID) -> Balance:
        return self.store.get_balance(user_id)

    def withdraw(self, user_id: UUID, number: str, amount: Decimal) -> Operation:
        """
        Spend `amount` points against order `number`.

        The balance pre-check only rejects early; the store re-checks the
        balance and the one-withdrawal-per-number rule inside the insert
        transaction, which is what holds under concurrent requests.
        """
        start = perf_counter()
        number = (number or "").strip()
        try:
            if not is_valid(number):
                raise InvalidOrderNumber(number)
            if amount is None or not amount.is_finite() or amount <= 0:
                raise InvalidAmount(f"Withdrawal amount must be positive, got {amount}")
            if not fits_amount_column(amount):
                raise InvalidAmount(f"Withdrawal amount must have at most 2 decimal places and 10 integer digits, got {amount}")

            balance = self.store.get_balance(user_id)
            if balance.current < amount:
                raise InsufficientFunds(f"Balance {balance.current} is less than {amount}")

            op = self.store.withdraw_points(user_id, number, amount)
            withdrawals_total.labels("accepted").inc()
            logger.info("withdrawal accepted user=%s order=%s amount=%s", user_id, number, amount)
            return op

        except InsufficientFunds:
            withdrawals_total.labels("insufficient_funds").inc()
            raise
        except DuplicateWithdrawal:
            withdrawals_total.labels("duplicate").inc()
            logger.info("duplicate withdrawal user=%s order=%s", user_id, number)
            raise
        except LoyaltyError as e:
            withdrawals_total.labels(type(e).__name__).inc()
            raise
        finally:
            withdraw_latency.observe(perf_counter() - start)

    def get_withdrawals(self, user_id: UUID) -> List[Operation]:
        return self.store.list_withdrawals(user_id)
