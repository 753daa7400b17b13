"""Prometheus metrics for the alert engine."""

from prometheus_client import Counter
from prometheus_client import Gauge
from prometheus_client import Histogram

ALERTS_RECEIVED_TOTAL = Counter(
    "alertrelay_alerts_received_total",
    "Total alerts received",
    ["status"]
)
ALERTS_INVALID_TOTAL = Counter(
    "alertrelay_alerts_invalid_total",
    "Total alert batches rejected as malformed"
)
ROUTING_MISSES_TOTAL = Counter(
    "alertrelay_routing_misses_total",
    "Total alerts that matched no route"
)
ACTIVE_ALERTS = Gauge(
    "alertrelay_alerts",
    "Number of alerts currently held",
    ["state"]
)
ALERT_GROUPS = Gauge(
    "alertrelay_alert_groups",
    "Number of materialized alert groups"
)
NOTIFICATIONS_TOTAL = Counter(
    "alertrelay_notifications_total",
    "Total notifications delivered",
    ["receiver", "status"]
)
NOTIFICATION_FAILURES_TOTAL = Counter(
    "alertrelay_notification_failures_total",
    "Total notification delivery failures",
    ["integration", "reason"]
)
NOTIFICATION_RETRIES_TOTAL = Counter(
    "alertrelay_notification_retries_total",
    "Total notification delivery retries",
    ["receiver"]
)
NOTIFICATIONS_COALESCED_TOTAL = Counter(
    "alertrelay_notifications_coalesced_total",
    "Flushes coalesced because a send was already in flight"
)
NOTIFICATION_LATENCY = Histogram(
    "alertrelay_notification_latency_seconds",
    "Time taken to deliver a notification, including retries",
    ["receiver"]
)
CONFIG_RELOADS_TOTAL = Counter(
    "alertrelay_config_reloads_total",
    "Total configuration reloads",
    ["result"]
)
