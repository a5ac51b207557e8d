# loyalty/models.py
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
import enum

from sqlalchemy import (
    CheckConstraint, Column, DateTime, Enum, Index, Integer, Numeric,
    String, UniqueConstraint, Uuid,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()

class OrderState(str, enum.Enum):
    NEW = "NEW"
    PROCESSING = "PROCESSING"
    PROCESSED = "PROCESSED"
    INVALID = "INVALID"

UNRESOLVED_STATES = (OrderState.NEW, OrderState.PROCESSING)
TERMINAL_STATES = (OrderState.PROCESSED, OrderState.INVALID)

class OperationKind(str, enum.Enum):
    ACCRUAL = "ACCRUAL"
    WITHDRAW = "WITHDRAW"

def now_utc():
    return datetime.now(timezone.utc)

# amounts are stored as NUMERIC(12, 2)
CENT = Decimal("0.01")
MAX_AMOUNT = Decimal("9999999999.99")

def fits_amount_column(value: Decimal) -> bool:
    """True if `value` is stored as-is by a NUMERIC(12, 2) column, without rounding or overflow."""
    if not value.is_finite() or abs(value) > MAX_AMOUNT:
        return False
    return value == value.quantize(CENT)

class Order(Base):
    __tablename__ = "orders"

    number = Column(String(32), primary_key=True)
    user_id = Column(Uuid, nullable=False, index=True)
    state = Column(Enum(OrderState, name="order_state"), nullable=False, default=OrderState.NEW)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)
    # last time the poller asked the accrual system about this order
    checked_at = Column(DateTime(timezone=True), nullable=True)
    accrual = Column(Numeric(12, 2), nullable=True)
    currency = Column(String(16), nullable=True)

    __table_args__ = (
        Index("orders_state_idx", "state"),
        CheckConstraint("accrual IS NULL OR accrual >= 0", name="orders_accrual_nonneg"),
    )

class Operation(Base):
    """Append-only ledger entry. Rows are never updated or deleted."""

    __tablename__ = "operations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Uuid, nullable=False, index=True)
    order_number = Column(String(32), nullable=False)
    kind = Column(Enum(OperationKind, name="operation_kind"), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(16), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)

    __table_args__ = (
        CheckConstraint("amount >= 0", name="operations_amount_nonneg"),
        # one accrual per order, one withdrawal per order number
        UniqueConstraint("order_number", "kind", name="operations_order_kind_unique"),
    )


class AdmissionResult(str, enum.Enum):
    ACCEPTED = "ACCEPTED"
    ALREADY_OWNED_BY_CALLER = "ALREADY_OWNED_BY_CALLER"
    OWNED_BY_OTHER = "OWNED_BY_OTHER"

@dataclass(frozen=True)
class Balance:
    # derived from the operations table on every read, never stored
    current: Decimal
    withdrawn: Decimal
