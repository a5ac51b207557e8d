# loyalty/services/poller.py
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from decimal import Decimal
from time import perf_counter
from typing import Callable, Optional, Protocol

from loyalty.accrual import AccrualSource, OrderSnapshot
from loyalty.errors import OracleError, OracleNotYetAvailable, OracleRateLimited, StorageError
from loyalty.metrics import accruals_total, cycle_latency, poller_cycles, poller_orders
from loyalty.models import Order, OrderState
from loyalty.store import LedgerStore

logger = logging.getLogger("loyalty.poller")


class Trigger(Protocol):
    def wait(self, stop: threading.Event) -> bool:
        """Block until the next tick. Returns False once `stop` is set."""
        ...


class IntervalTrigger:
    def __init__(self, period_s: float):
        self.period_s = period_s

    def wait(self, stop: threading.Event) -> bool:
        return not stop.wait(self.period_s)


@dataclass
class CycleReport:
    checked: int = 0
    updated: int = 0
    finalized: int = 0
    skipped: int = 0
    failed: int = 0
    rate_limited: bool = False
    paused: bool = False


class ReconciliationPoller:
    """
    Background loop that asks the accrual system about unresolved orders
    and applies the answers to the ledger.

    One cycle per trigger tick:
      - fetch up to `batch_size` NEW/PROCESSING orders (least recently checked first)
      - PROCESSING / INVALID -> status update only
      - PROCESSED -> order finalized and ACCRUAL appended in one transaction
      - not registered yet / unavailable -> left for a later cycle
      - rate limited -> rest of the cycle dropped, polling paused for Retry-After

    A failing order never stops the others; a failing cycle never stops the loop.
    """

    def __init__(
        self,
        store: LedgerStore,
        source: AccrualSource,
        *,
        batch_size: int = 10,
        trigger: Optional[Trigger] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.source = source
        self.batch_size = batch_size
        self.trigger = trigger or IntervalTrigger(5.0)
        self._clock = clock
        self._resume_at = 0.0
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # --- lifecycle ----------------------------------------------------------

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self.run, args=(self._stop,), name="accrual-poller", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning("reconciliation poller did not stop within %ss", timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run(self, stop: threading.Event) -> None:
        logger.info("reconciliation poller started; batch_size=%s", self.batch_size)
        while self.trigger.wait(stop):
            self.tick()
        logger.info("reconciliation poller stopped")

    def tick(self) -> Optional[CycleReport]:
        """Run one cycle, containing any failure to this cycle."""
        start = perf_counter()
        try:
            report = self.run_cycle()
        except StorageError as e:
            poller_cycles.labels("aborted").inc()
            logger.warning("reconciliation cycle aborted, could not load orders: %s", e)
            return None
        except Exception:
            poller_cycles.labels("crashed").inc()
            logger.exception("reconciliation cycle crashed")
            return None
        finally:
            cycle_latency.observe(perf_counter() - start)

        poller_cycles.labels("paused" if report.paused else "ok").inc()
        if report.checked:
            logger.info(
                "reconciliation cycle checked=%s updated=%s finalized=%s skipped=%s failed=%s rate_limited=%s",
                report.checked, report.updated, report.finalized,
                report.skipped, report.failed, report.rate_limited,
            )
        return report

    # --- one cycle ----------------------------------------------------------

    def run_cycle(self) -> CycleReport:
        report = CycleReport()
        if self._clock() < self._resume_at:
            report.paused = True
            return report

        # StorageError here aborts the whole cycle (nothing to iterate over)
        orders = self.store.list_unresolved_orders(self.batch_size)

        for order in orders:
            report.checked += 1
            try:
                self._reconcile(order, report)
            except OracleRateLimited as e:
                self._resume_at = self._clock() + e.retry_after
                report.rate_limited = True
                poller_orders.labels("rate_limited").inc()
                logger.warning("accrual system rate limited us; pausing %ss", e.retry_after)
                break
            except StorageError as e:
                report.failed += 1
                poller_orders.labels("storage_error").inc()
                logger.warning("could not apply accrual result order=%s: %s", order.number, e)
                self._requeue(order.number)
            except Exception:
                report.failed += 1
                poller_orders.labels("error").inc()
                logger.exception("unexpected error reconciling order=%s", order.number)
                self._requeue(order.number)

        return report

    def _requeue(self, number: str) -> None:
        # the failed transaction rolled back checked_at; stamp it separately so the order rotates to the back
        try:
            self.store.mark_checked(number)
        except StorageError as e:
            logger.warning("could not mark order checked order=%s: %s", number, e)

    def _reconcile(self, order: Order, report: CycleReport) -> None:
        try:
            snapshot = self.source.fetch_state(order.number)
        except OracleNotYetAvailable:
            report.skipped += 1
            poller_orders.labels("not_registered").inc()
            self.store.mark_checked(order.number)
            return
        except OracleRateLimited:
            raise
        except OracleError as e:
            report.failed += 1
            poller_orders.labels("oracle_error").inc()
            logger.warning("accrual lookup failed order=%s: %s", order.number, e)
            self.store.mark_checked(order.number)
            return

        self._apply(order, snapshot, report)

    def _apply(self, order: Order, snapshot: OrderSnapshot, report: CycleReport) -> None:
        if snapshot.state is OrderState.PROCESSED:
            amount = snapshot.accrual if snapshot.accrual is not None else Decimal("0")
            if self.store.accrue_points(order.number, amount):
                report.finalized += 1
                accruals_total.inc()
                poller_orders.labels("processed").inc()
                logger.info("order processed order=%s user=%s accrual=%s", order.number, order.user_id, amount)
            else:
                report.skipped += 1
            return

        if snapshot.state in (OrderState.PROCESSING, OrderState.INVALID):
            if self.store.update_order_status(order.number, snapshot.state):
                report.updated += 1
                poller_orders.labels(snapshot.state.value.lower()).inc()
            else:
                report.skipped += 1
            return

        # the accrual system never reports NEW; treat it as "nothing to do yet"
        report.skipped += 1
        self.store.mark_checked(order.number)
