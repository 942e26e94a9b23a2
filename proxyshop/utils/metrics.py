"""
Prometheus-based metrics for production monitoring.
Provides /metrics endpoint for scraping.
"""
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response


# Counters
purchases_total = Counter(
    "purchases_total",
    "Purchase outcomes",
    ["resource_type", "state", "reason"],  # settled / partially_settled / aborted
)

proxies_claimed_total = Counter(
    "proxies_claimed_total",
    "Proxies bound to users",
    ["resource_type"],
)

claim_conflicts_total = Counter(
    "claim_conflicts_total",
    "Claims skipped because another user owns the proxy",
)

balance_operations_total = Counter(
    "balance_operations_total",
    "Balance ledger operations",
    ["operation"],  # DEBIT, CREDIT, REFUND
)

balance_rejected_total = Counter(
    "balance_rejected_total",
    "Purchases rejected for insufficient funds",
)

deposits_total = Counter(
    "deposits_total",
    "Deposit invoices by final status",
    ["status"],
)

provider_requests_total = Counter(
    "provider_requests_total",
    "External provider API requests",
    ["provider", "method", "status"],
)

telegram_requests_total = Counter(
    "telegram_requests_total",
    "Total Telegram API requests",
    ["method", "status"],
)

circuit_breaker_state = Gauge(
    "circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=open)",
    ["name"],
)

# Histograms
provider_request_duration_seconds = Histogram(
    "provider_request_duration_seconds",
    "External provider API request duration",
    ["provider", "method"],
    buckets=[0.1, 0.5, 1, 2, 5, 10, 30],
)

purchase_duration_seconds = Histogram(
    "purchase_duration_seconds",
    "Purchase duration, debit to settlement",
    buckets=[1, 5, 10, 30, 60, 120, 300],
)

telegram_request_duration_seconds = Histogram(
    "telegram_request_duration_seconds",
    "Telegram API request duration",
    ["method"],
    buckets=[0.1, 0.5, 1, 2, 5, 10],
)


# Metrics endpoint router
router = APIRouter()


@router.get("/metrics")
def metrics_endpoint() -> Response:
    """Prometheus metrics endpoint for scraping."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )
