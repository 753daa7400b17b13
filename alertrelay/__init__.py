"""alertrelay: alert routing and notification engine.

This package receives fired and resolved alert events, routes them through a
tree of label matchers, groups and inhibits them, and notifies receivers on
group wait / group interval / repeat interval timers.

Modules:
    alerts: Alert state, fingerprints, grouping and the alert store
    matchers: Label matchers
    routing: Routing tree
    inhibition: Inhibition rules
    notification_log: Record of what was notified, for dedup and repeats
    notifiers: Notifications, receivers and webhook/Discord/Slack notifiers
    dispatcher: Delivery with retries and per-group ordering
    scheduler: Notification timers
    schema: Routing configuration schema and validation
    models: Ingestion payload models
    engine: The engine tying everything together
    config: Service settings
    api: FastAPI application
"""

__version__ = "1.0.0"

from .alerts import Alert
from .alerts import AlertStatus
from .alerts import AlertStore
from .engine import AlertEngine
from .errors import AlertRelayError
from .errors import ConfigValidationError
from .errors import DeliveryError
from .errors import IngestionError
from .errors import RoutingMiss
from .inhibition import InhibitionEngine
from .inhibition import InhibitionRule
from .matchers import Matcher
from .matchers import MatchType
from .routing import Route
from .routing import RoutingTree
from .scheduler import NotificationScheduler

__all__ = [
    "Alert",
    "AlertEngine",
    "AlertRelayError",
    "AlertStatus",
    "AlertStore",
    "ConfigValidationError",
    "DeliveryError",
    "InhibitionEngine",
    "InhibitionRule",
    "IngestionError",
    "MatchType",
    "Matcher",
    "NotificationScheduler",
    "Route",
    "RoutingTree",
    "RoutingMiss",
]
