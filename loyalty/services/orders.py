# loyalty/services/orders.py
import logging
from typing import List
from uuid import UUID

from loyalty.errors import InvalidOrderNumber, OrderConflict
from loyalty.luhn import is_valid
from loyalty.metrics import orders_admitted
from loyalty.models import AdmissionResult, Order
from loyalty.store import LedgerStore

logger = logging.getLogger("loyalty.orders")


class OrderService:
    def __init__(self, store: LedgerStore):
        self.store = store

    def admit(self, user_id: UUID, number: str) -> AdmissionResult:
        """
        Register an order number for a user:
          - checksum fails -> InvalidOrderNumber, nothing written
          - new number -> ACCEPTED (order stored as NEW)
          - already uploaded by this user -> ALREADY_OWNED_BY_CALLER, no write
          - uploaded by someone else -> OrderConflict, no write
        """
        number = (number or "").strip()
        if not is_valid(number):
            orders_admitted.labels("invalid").inc()
            raise InvalidOrderNumber(number)

        result = self.store.add_order(user_id, number)
        orders_admitted.labels(result.value.lower()).inc()

        if result is AdmissionResult.OWNED_BY_OTHER:
            logger.info("order upload conflict order=%s user=%s", number, user_id)
            raise OrderConflict(number)
        if result is AdmissionResult.ACCEPTED:
            logger.info("order accepted order=%s user=%s", number, user_id)
        return result

    def list_orders(self, user_id: UUID) -> List[Order]:
        return self.store.list_orders(user_id)
