# loyalty/store.py
from contextlib import contextmanager
from decimal import Decimal
from typing import Iterator, List, Optional
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from loyalty.db import Database
from loyalty.errors import DuplicateWithdrawal, InsufficientFunds, StorageError
from loyalty.models import (
    AdmissionResult, Balance, Operation, OperationKind, Order, OrderState,
    TERMINAL_STATES, UNRESOLVED_STATES, now_utc,
)

ZERO = Decimal("0")


class LedgerStore:
    """
    Durable record of orders and ledger operations.

    Every public method runs in its own transaction against the shared
    Database and raises StorageError on any driver/ORM failure:
      - orders: add, list, fetch unresolved, status updates
      - accrual finalization (order row locked FOR UPDATE)
      - balance aggregation and withdrawals (user's ledger locked)
    """

    def __init__(self, database: Database, currency: str = "POINTS"):
        self.database = database
        self.currency = currency

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        try:
            with self.database.SessionLocal.begin() as db:
                yield db
        except SQLAlchemyError as e:
            raise StorageError(str(e)) from e

    # --- query shapes -------------------------------------------------------

    @staticmethod
    def get_order(db: Session, number: str, *, for_update: bool = False) -> Optional[Order]:
        stmt = select(Order).where(Order.number == number)
        if for_update:
            stmt = stmt.with_for_update()
        return db.execute(stmt).scalar_one_or_none()

    @staticmethod
    def _lock_user_ledger(db: Session, user_id: UUID) -> None:
        # Serializes balance-changing writes for one user. Lock order is fixed
        # (by number) so two withdrawals can't deadlock each other.
        db.execute(
            select(Order.number)
            .where(Order.user_id == user_id)
            .order_by(Order.number)
            .with_for_update()
        ).all()

    @staticmethod
    def _sum_by_kind(db: Session, user_id: UUID) -> Balance:
        rows = db.execute(
            select(Operation.kind, func.sum(Operation.amount))
            .where(Operation.user_id == user_id)
            .group_by(Operation.kind)
        ).all()
        sums = {kind: Decimal(total or 0) for kind, total in rows}
        accrued = sums.get(OperationKind.ACCRUAL, ZERO)
        withdrawn = sums.get(OperationKind.WITHDRAW, ZERO)
        return Balance(current=accrued - withdrawn, withdrawn=withdrawn)

    @staticmethod
    def _count_operations(db: Session, order_number: str, kind: OperationKind) -> int:
        return db.execute(
            select(func.count(Operation.id))
            .where(Operation.order_number == order_number, Operation.kind == kind)
        ).scalar_one()

    # --- orders -------------------------------------------------------------

    def add_order(self, user_id: UUID, number: str) -> AdmissionResult:
        try:
            return self._add_order(user_id, number)
        except StorageError as e:
            if not isinstance(e.__cause__, IntegrityError):
                raise
            # Lost the insert race for this number; classify against the winner.
            return self._add_order(user_id, number)

    def _add_order(self, user_id: UUID, number: str) -> AdmissionResult:
        with self.transaction() as db:
            existing = self.get_order(db, number)
            if existing is not None:
                if existing.user_id == user_id:
                    return AdmissionResult.ALREADY_OWNED_BY_CALLER
                return AdmissionResult.OWNED_BY_OTHER

            db.add(Order(number=number, user_id=user_id, state=OrderState.NEW, created_at=now_utc()))
            db.flush()
            return AdmissionResult.ACCEPTED

    def list_orders(self, user_id: UUID) -> List[Order]:
        with self.transaction() as db:
            return list(db.execute(
                select(Order)
                .where(Order.user_id == user_id)
                .order_by(Order.created_at, Order.number)
            ).scalars().all())

    def list_unresolved_orders(self, limit: int) -> List[Order]:
        """Orders still waiting on the accrual system, least recently checked first."""
        with self.transaction() as db:
            return list(db.execute(
                select(Order)
                .where(Order.state.in_(UNRESOLVED_STATES))
                .order_by(func.coalesce(Order.checked_at, Order.created_at), Order.number)
                .limit(limit)
            ).scalars().all())

    def update_order_status(self, number: str, state: OrderState) -> bool:
        """Move a non-terminal order to PROCESSING or INVALID. Returns False if nothing changed."""
        if state not in (OrderState.PROCESSING, OrderState.INVALID):
            raise ValueError(f"update_order_status cannot set {state.value}")
        with self.transaction() as db:
            result = db.execute(
                update(Order)
                .where(Order.number == number, Order.state.in_(UNRESOLVED_STATES))
                .values(state=state, checked_at=now_utc())
            )
            return result.rowcount > 0

    def mark_checked(self, number: str) -> None:
        with self.transaction() as db:
            db.execute(update(Order).where(Order.number == number).values(checked_at=now_utc()))

    def accrue_points(self, number: str, amount: Decimal) -> bool:
        """
        Finalize an order as PROCESSED and credit its owner, atomically.
        Returns False when the order is missing or already terminal (no write).
        """
        with self.transaction() as db:
            order = self.get_order(db, number, for_update=True)
            if order is None or order.state in TERMINAL_STATES:
                return False

            order.state = OrderState.PROCESSED
            order.accrual = amount
            order.currency = self.currency
            order.checked_at = now_utc()
            db.add(Operation(
                user_id=order.user_id, order_number=number,
                kind=OperationKind.ACCRUAL, amount=amount, currency=self.currency,
                created_at=now_utc(),
            ))
            return True

    # --- balance ------------------------------------------------------------

    def get_balance(self, user_id: UUID) -> Balance:
        with self.transaction() as db:
            return self._sum_by_kind(db, user_id)

    def withdraw_points(self, user_id: UUID, number: str, amount: Decimal) -> Operation:
        """
        Append a WITHDRAW operation and re-check the ledger in the same transaction:
          - balance went negative -> InsufficientFunds
          - another withdrawal already references this number -> DuplicateWithdrawal
        Either way the insert is rolled back.
        """
        with self.transaction() as db:
            self._lock_user_ledger(db, user_id)

            op = Operation(
                user_id=user_id, order_number=number,
                kind=OperationKind.WITHDRAW, amount=amount, currency=self.currency,
                created_at=now_utc(),
            )
            db.add(op)
            try:
                db.flush()
            except IntegrityError as e:
                raise DuplicateWithdrawal(number) from e

            balance = self._sum_by_kind(db, user_id)
            if balance.current < 0:
                raise InsufficientFunds(f"Balance {balance.current + amount} is less than {amount}")

            if self._count_operations(db, number, OperationKind.WITHDRAW) > 1:
                raise DuplicateWithdrawal(number)

        return op

    def list_withdrawals(self, user_id: UUID) -> List[Operation]:
        with self.transaction() as db:
            return list(db.execute(
                select(Operation)
                .where(Operation.user_id == user_id, Operation.kind == OperationKind.WITHDRAW)
                .order_by(Operation.created_at, Operation.id)
            ).scalars().all())
