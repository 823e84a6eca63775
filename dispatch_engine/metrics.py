"""
Prometheus metrics: transitions, concurrency conflicts, assignments, location pings, downstream failures.
"""
from prometheus_client import Counter, generate_latest

order_transitions_total = Counter(
    "order_transitions_total",
    "Total order status transitions committed",
    ["from_status", "to_status"],
)
order_transitions_rejected_total = Counter(
    "order_transitions_rejected_total",
    "Total transition/assignment requests rejected, by error code",
    ["code"],
)
# Expected outcomes of legitimate concurrent use, kept apart from genuine errors
concurrency_conflicts_total = Counter(
    "concurrency_conflicts_total",
    "Conditional writes that affected zero rows",
    ["kind"],
)
courier_assignments_total = Counter(
    "courier_assignments_total",
    "Total couriers bound to orders",
)

location_pings_total = Counter(
    "location_pings_total",
    "Total courier location pings persisted",
)
location_rate_limited_total = Counter(
    "location_rate_limited_total",
    "Total location pings refused by the per-courier rate limit",
)

notifications_failed_total = Counter(
    "notifications_failed_total",
    "Notification jobs that could not be enqueued",
)
realtime_publish_failed_total = Counter(
    "realtime_publish_failed_total",
    "Realtime events that could not be published",
)


def get_metrics_content_type():
    return "text/plain; charset=utf-8; version=0.0.4"


def get_metrics_bytes():
    return generate_latest()
