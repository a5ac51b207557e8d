# loyalty/metrics.py
from prometheus_client import Counter, Histogram, make_asgi_app

# Counters
orders_admitted = Counter(
    "orders_admitted_total",
    "Order upload outcomes",
    ["result"],
)
withdrawals_total = Counter(
    "withdrawals_total",
    "Withdrawal outcomes",
    ["result"],
)
accruals_total = Counter("accruals_total", "Orders finalized with an accrual ledger entry")

poller_cycles = Counter("poller_cycles_total", "Reconciliation cycles", ["outcome"])
poller_orders = Counter(
    "poller_orders_total",
    "Orders handled by the reconciliation poller",
    ["outcome"],
)
oracle_requests = Counter(
    "accrual_requests_total",
    "Accrual system responses by outcome",
    ["outcome"],
)

# Latency
withdraw_latency = Histogram("withdraw_latency_seconds", "Withdrawal latency in seconds")
oracle_latency = Histogram("accrual_request_latency_seconds", "Accrual system request latency in seconds")
cycle_latency = Histogram("poller_cycle_latency_seconds", "Reconciliation cycle latency in seconds")

# ASGI app for /metrics
metrics_asgi_app = make_asgi_app()
