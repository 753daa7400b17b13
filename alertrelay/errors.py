"""Error taxonomy for the alert routing engine.

Configuration errors are fatal at load time, ingestion errors reject a whole
batch, routing misses and delivery errors are logged and counted but never
take the engine down.
"""


class AlertRelayError(Exception):
    """Base class for all engine errors."""


class ConfigValidationError(AlertRelayError):
    """Routing, inhibition or receiver configuration is invalid.

    Attributes:
        problems: Every problem found, so a single load reports them all
    """

    def __init__(self, problems: list[str] | str) -> None:
        if isinstance(problems, str):
            problems = [problems]
        self.problems = problems
        super().__init__("; ".join(problems))


class IngestionError(AlertRelayError):
    """An alert batch is malformed and was rejected as a whole."""


class RoutingMiss(AlertRelayError):
    """An alert matched no route in the routing tree."""

    def __init__(self, fingerprint: str, labels: dict[str, str]) -> None:
        self.fingerprint = fingerprint
        self.labels = labels
        super().__init__(f"Alert {fingerprint} matched no route")


class DeliveryError(AlertRelayError):
    """A notifier failed to deliver a notification.

    Attributes:
        transient: Whether retrying may succeed (network errors, 5xx, 429)
        status_code: HTTP status code, if the failure came from a response
    """

    def __init__(self, message: str, transient: bool, status_code: int | None = None) -> None:
        self.transient = transient
        self.status_code = status_code
        super().__init__(message)
