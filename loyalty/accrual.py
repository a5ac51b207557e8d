# loyalty/accrual.py
from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Callable, Optional, Protocol

import httpx

from loyalty.errors import OracleNotYetAvailable, OracleRateLimited, OracleUnavailable
from loyalty.metrics import oracle_latency, oracle_requests
from loyalty.models import OrderState, fits_amount_column

logger = logging.getLogger("loyalty.accrual")

DEFAULT_RETRY_AFTER_SECONDS = 60.0

# Accrual system status -> our order state. REGISTERED means "known, not calculated yet".
_STATUS_MAP = {
    "REGISTERED": OrderState.PROCESSING,
    "PROCESSING": OrderState.PROCESSING,
    "PROCESSED": OrderState.PROCESSED,
    "INVALID": OrderState.INVALID,
}


@dataclass(frozen=True)
class OrderSnapshot:
    number: str
    state: OrderState
    accrual: Optional[Decimal] = None


class AccrualSource(Protocol):
    def fetch_state(self, number: str) -> OrderSnapshot: ...


def _retry_after(resp: httpx.Response) -> float:
    raw = resp.headers.get("Retry-After")
    try:
        value = float(raw) if raw is not None else DEFAULT_RETRY_AFTER_SECONDS
    except ValueError:
        return DEFAULT_RETRY_AFTER_SECONDS
    return max(0.0, value)


class AccrualClient:
    """
    HTTP client for the external accrual system.

    fetch_state() returns an OrderSnapshot or raises:
      - OracleNotYetAvailable: 204/404, the system has no record of the order yet
      - OracleRateLimited: 429, carries the Retry-After delay
      - OracleUnavailable: 5xx, timeout, transport error or a body we can't read

    timeout_s is a deadline for the whole call. httpx only bounds each
    connect/read phase, so the body is streamed and the deadline is checked
    between chunks; a server trickling bytes is cut off at the next chunk.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_s: float = 3.0,
        transport: httpx.BaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.timeout_s = timeout_s
        self._clock = clock
        self._client = httpx.Client(base_url=base_url, timeout=timeout_s, transport=transport)

    def close(self) -> None:
        self._client.close()

    def fetch_state(self, number: str) -> OrderSnapshot:
        deadline = self._clock() + self.timeout_s
        with oracle_latency.time():
            try:
                with self._client.stream("GET", f"/api/orders/{number}") as resp:
                    body = b""
                    for chunk in resp.iter_bytes():
                        body += chunk
                        if self._clock() > deadline:
                            raise httpx.ReadTimeout("accrual response exceeded its deadline", request=resp.request)
            except httpx.TimeoutException as e:
                oracle_requests.labels("timeout").inc()
                raise OracleUnavailable(f"accrual request timed out for order {number}") from e
            except httpx.HTTPError as e:
                oracle_requests.labels("transport_error").inc()
                raise OracleUnavailable(f"accrual request failed for order {number}: {e}") from e

        if resp.status_code in (204, 404):
            oracle_requests.labels("not_found").inc()
            raise OracleNotYetAvailable(f"order {number} not registered in accrual system")
        if resp.status_code == 429:
            oracle_requests.labels("rate_limited").inc()
            raise OracleRateLimited(_retry_after(resp))
        if resp.status_code != 200:
            oracle_requests.labels("server_error").inc()
            raise OracleUnavailable(f"accrual system answered {resp.status_code} for order {number}")

        snapshot = self._parse(number, body)
        oracle_requests.labels("ok").inc()
        return snapshot

    @staticmethod
    def _parse(number: str, body: bytes) -> OrderSnapshot:
        try:
            payload = json.loads(body)
        except ValueError as e:
            oracle_requests.labels("bad_payload").inc()
            raise OracleUnavailable(f"accrual response for order {number} is not JSON") from e

        status = str(payload.get("status") or "").upper() if isinstance(payload, dict) else ""
        state = _STATUS_MAP.get(status)
        if state is None:
            oracle_requests.labels("bad_payload").inc()
            logger.warning("unknown accrual status order=%s status=%r", number, status)
            raise OracleUnavailable(f"unknown accrual status {status!r} for order {number}")

        accrual = None
        if payload.get("accrual") is not None:
            try:
                accrual = Decimal(str(payload["accrual"]))
            except InvalidOperation as e:
                oracle_requests.labels("bad_payload").inc()
                raise OracleUnavailable(f"bad accrual amount for order {number}") from e
            # must land in the ledger exactly as reported
            if not fits_amount_column(accrual) or accrual < 0:
                oracle_requests.labels("bad_payload").inc()
                logger.warning("unusable accrual amount order=%s accrual=%s", number, accrual)
                raise OracleUnavailable(f"bad accrual amount {accrual} for order {number}")

        return OrderSnapshot(number=number, state=state, accrual=accrual)
