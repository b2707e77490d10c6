"""Prometheus metrics for monitoring decisions, settlements and order deadlines"""

from decimal import Decimal

from prometheus_client import Counter, Histogram

# Decision metrics
installment_decision_counter = Counter(
    "settlement_installment_decisions_total",
    "Installment verification decisions",
    ["verdict"],  # approve | reject
)

credit_request_decision_counter = Counter(
    "settlement_credit_request_decisions_total",
    "Credit request decisions",
    ["verdict"],
)

order_payment_decision_counter = Counter(
    "settlement_order_payment_decisions_total",
    "Guest order payment decisions",
    ["verdict"],
)

approved_limit_histogram = Histogram(
    "settlement_approved_limit",
    "Approved credit limits",
    buckets=[100_000, 250_000, 500_000, 1_000_000, 2_500_000, 5_000_000],
)

# Returns
settlement_counter = Counter(
    "settlement_return_settlements_total",
    "Processed returns by settlement direction",
    ["direction"],  # owed_to_customer | owed_by_customer | none
)

supplier_reception_counter = Counter(
    "settlement_supplier_receptions_total",
    "Supplier reception confirmations by outcome",
    ["outcome"],  # completed | partially_received
)

# Orders
order_auto_cancel_counter = Counter(
    "settlement_order_auto_cancellations_total",
    "Timeboxed orders cancelled for inactivity",
    ["trigger"],  # lazy | sweep
)

# Errors
conflict_counter = Counter(
    "settlement_conflicts_total",
    "Operations rejected by a conflict",
    ["code"],
)

# Service health
request_duration_histogram = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint", "status"],
)


def record_credit_request_decision(verdict: str, approved_limit: Decimal | None = None) -> None:
    """Record a credit request decision and, for approvals, the granted limit"""
    credit_request_decision_counter.labels(verdict=verdict).inc()
    if approved_limit is not None:
        approved_limit_histogram.observe(float(approved_limit))
