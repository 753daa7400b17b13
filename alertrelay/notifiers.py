"""Notifications and the notifiers that deliver them.

A ``Notification`` is the rendered state of one alert group for one
receiver at flush time. A ``Receiver`` owns an ordered list of notifiers;
each notifier turns a notification into an outbound call and reports a
``DeliveryOutcome``. The core does not care about the transport.

Examples:
    >>> webhook = WebhookNotifier("ops-webhook", {"url": "http://hooks.local/alerts"})
    >>> receiver = Receiver("ops", [webhook])
    >>> outcome = await webhook.deliver(notification)
"""

import time
from abc import ABC
from abc import abstractmethod
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from enum import Enum
from typing import Any

import httpx
import structlog

from .alerts import Alert
from .alerts import AlertStatus
from .alerts import utcnow
from .errors import DeliveryError
from .metrics import NOTIFICATION_FAILURES_TOTAL

HTTP_CLIENT_TIMEOUT = 10.0  # seconds
WEBHOOK_PAYLOAD_VERSION = "4"
DISCORD_MAX_EMBEDS = 10
DISCORD_MAX_DESCRIPTION = 4096
SLACK_MAX_TEXT = 3000

logger = structlog.get_logger()


class DeliveryOutcome(str, Enum):
    """Result of a single delivery attempt."""

    SUCCESS = "success"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"


@dataclass
class Notification:
    """Rendered state of an alert group for one receiver.

    Attributes:
        group_key: Key of the notified group
        receiver: Receiver name
        group_labels: The group_by projection shared by the group
        firing: Firing, non-inhibited alerts at flush time
        resolved: Resolved alerts at flush time
        created_at: Flush time
        external_url: Base URL of this service, for links in payloads
    """

    group_key: str
    receiver: str
    group_labels: dict[str, str]
    firing: list[Alert] = field(default_factory=list)
    resolved: list[Alert] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    external_url: str = ""

    @property
    def status(self) -> AlertStatus:
        return AlertStatus.FIRING if self.firing else AlertStatus.RESOLVED

    @property
    def alerts(self) -> list[Alert]:
        return self.firing + self.resolved

    @property
    def common_labels(self) -> dict[str, str]:
        return _common(alert.labels for alert in self.alerts)

    @property
    def common_annotations(self) -> dict[str, str]:
        return _common(alert.annotations for alert in self.alerts)

    @property
    def title(self) -> str:
        name = self.group_labels.get("alertname") or self.common_labels.get("alertname", "")
        count = f":{len(self.firing)}" if self.firing else ""
        return f"[{self.status.value.upper()}{count}] {name}".rstrip()

    def without_resolved(self) -> "Notification":
        """Copy of this notification carrying only the firing alerts."""
        return Notification(
            group_key=self.group_key,
            receiver=self.receiver,
            group_labels=self.group_labels,
            firing=list(self.firing),
            resolved=[],
            created_at=self.created_at,
            external_url=self.external_url,
        )

    def to_payload(self, max_alerts: int = 0) -> dict[str, Any]:
        """Generic webhook payload.

        Args:
            max_alerts: Truncate the alert list to this many entries (0 = no limit)
        """
        alerts = [alert.to_dict(self.created_at) for alert in self.alerts]
        truncated = 0
        if max_alerts and len(alerts) > max_alerts:
            truncated = len(alerts) - max_alerts
            alerts = alerts[:max_alerts]

        return {
            "version": WEBHOOK_PAYLOAD_VERSION,
            "groupKey": self.group_key,
            "truncatedAlerts": truncated,
            "status": self.status.value,
            "receiver": self.receiver,
            "groupLabels": self.group_labels,
            "commonLabels": self.common_labels,
            "commonAnnotations": self.common_annotations,
            "externalURL": self.external_url,
            "alerts": alerts,
        }


def _common(mappings) -> dict[str, str]:
    common: dict[str, str] | None = None
    for mapping in mappings:
        if common is None:
            common = dict(mapping)
        else:
            common = {k: v for k, v in common.items() if mapping.get(k) == v}
    return dict(sorted((common or {}).items()))


class Notifier(ABC):
    """Abstract base class for notifiers."""

    kind = "notifier"

    def __init__(self, name: str, config: dict[str, Any], client: httpx.AsyncClient | None = None) -> None:
        """Initialize the notifier.

        Args:
            name: Notifier name, used in logs and metrics
            config: Notifier configuration
            client: Shared HTTP client; a short-lived one is created per call if omitted
        """
        self.name = name
        self.config = config
        self.send_resolved = config.get("send_resolved", True)
        self.timeout = config.get("timeout", HTTP_CLIENT_TIMEOUT)
        self.client = client

    async def deliver(self, notification: Notification) -> DeliveryOutcome:
        """Deliver a notification.

        Returns:
            SUCCESS, TRANSIENT_FAILURE or PERMANENT_FAILURE; errors never propagate
        """
        if not notification.firing and not self.send_resolved:
            logger.debug("Resolved notification skipped", notifier=self.name, group_key=notification.group_key)
            return DeliveryOutcome.SUCCESS

        if not self.send_resolved:
            notification = notification.without_resolved()

        try:
            await self.send(notification)
        except DeliveryError as e:
            outcome = DeliveryOutcome.TRANSIENT_FAILURE if e.transient else DeliveryOutcome.PERMANENT_FAILURE
            logger.warning(
                "Notification delivery failed",
                notifier=self.name,
                receiver=notification.receiver,
                group_key=notification.group_key,
                outcome=outcome.value,
                status_code=e.status_code,
                error=str(e),
            )
            NOTIFICATION_FAILURES_TOTAL.labels(
                integration=self.kind,
                reason=outcome.value,
            ).inc()
            return outcome
        except (TypeError, ValueError) as e:
            # Payload could not be rendered; retrying will not help
            logger.error(
                "Notification rendering failed",
                notifier=self.name,
                group_key=notification.group_key,
                error=str(e),
            )
            NOTIFICATION_FAILURES_TOTAL.labels(integration=self.kind, reason="render").inc()
            return DeliveryOutcome.PERMANENT_FAILURE

        logger.info(
            "Notification sent",
            notifier=self.name,
            receiver=notification.receiver,
            group_key=notification.group_key,
            status=notification.status.value,
            firing=len(notification.firing),
            resolved=len(notification.resolved),
        )
        return DeliveryOutcome.SUCCESS

    @abstractmethod
    async def send(self, notification: Notification) -> None:
        """Perform the outbound call.

        Raises:
            DeliveryError: If delivery failed
        """

    async def post_json(self, url: str, payload: dict[str, Any], headers: dict[str, str] | None = None) -> httpx.Response:
        """POST a JSON payload and classify failures.

        Raises:
            DeliveryError: Transient for network errors, timeouts, 5xx and
                429; permanent for other 4xx and unusable URLs
        """
        try:
            if self.client is not None:
                response = await self.client.post(url, json=payload, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(url, json=payload, headers=headers)
        except (httpx.InvalidURL, httpx.UnsupportedProtocol) as e:
            raise DeliveryError(f"Invalid notifier URL: {e}", transient=False) from e
        except httpx.HTTPError as e:
            raise DeliveryError(f"{type(e).__name__}: {e}", transient=True) from e

        status_code = response.status_code
        if status_code >= 500 or status_code == 429:
            raise DeliveryError(f"Server returned {status_code}", transient=True, status_code=status_code)
        if status_code >= 400:
            raise DeliveryError(f"Server returned {status_code}", transient=False, status_code=status_code)
        return response


class WebhookNotifier(Notifier):
    """Generic webhook notifier."""

    kind = "webhook"

    async def send(self, notification: Notification) -> None:
        url = self.config.get("url")
        if not url:
            raise DeliveryError("Webhook URL not configured", transient=False)

        headers = {"Content-Type": "application/json"}
        auth_header = self.config.get("auth_header")
        if auth_header:
            headers["Authorization"] = auth_header

        payload = notification.to_payload(max_alerts=self.config.get("max_alerts", 0))
        await self.post_json(url, payload, headers=headers)


class DiscordNotifier(Notifier):
    """Discord webhook notifier."""

    kind = "discord"

    COLOR_FIRING = 0x992D22
    COLOR_RESOLVED = 0x2ECC71

    async def send(self, notification: Notification) -> None:
        url = self.config.get("webhook_url")
        if not url:
            raise DeliveryError("Discord webhook URL not configured", transient=False)

        await self.post_json(url, self.render(notification))

    def render(self, notification: Notification) -> dict[str, Any]:
        """Build the Discord message body."""
        lines = []
        for alert in notification.alerts:
            state = "resolved" if alert.is_resolved(notification.created_at) else "firing"
            summary = alert.annotations.get("summary") or alert.annotations.get("description") or alert.name
            labels = ", ".join(f"{k}={v}" for k, v in sorted(alert.labels.items()))
            lines.append(f"**{state}** {summary}\n`{labels}`")

        description = "\n\n".join(lines)
        if len(description) > DISCORD_MAX_DESCRIPTION:
            description = description[: DISCORD_MAX_DESCRIPTION - 1] + "…"

        color = self.COLOR_FIRING if notification.firing else self.COLOR_RESOLVED
        embed = {
            "title": notification.title,
            "description": description,
            "color": color,
            "timestamp": notification.created_at.isoformat(),
        }
        if notification.external_url:
            embed["url"] = notification.external_url

        return {
            "content": self.config.get("message", ""),
            "embeds": [embed][:DISCORD_MAX_EMBEDS],
        }


class SlackNotifier(Notifier):
    """Slack incoming-webhook notifier."""

    kind = "slack"

    async def send(self, notification: Notification) -> None:
        url = self.config.get("api_url") or self.config.get("webhook_url")
        if not url:
            raise DeliveryError("Slack webhook URL not configured", transient=False)

        await self.post_json(url, self.render(notification))

    def render(self, notification: Notification) -> dict[str, Any]:
        """Build the Slack message body."""
        text = "\n".join(
            alert.annotations.get("summary", alert.name) for alert in notification.alerts
        )[:SLACK_MAX_TEXT]

        message = {
            "username": self.config.get("username", "alertrelay"),
            "icon_emoji": ":warning:" if notification.firing else ":white_check_mark:",
            "attachments": [
                {
                    "color": self._get_color(notification),
                    "title": notification.title,
                    "text": text,
                    "fields": [
                        {"title": name, "value": value, "short": True}
                        for name, value in notification.group_labels.items()
                    ],
                    "footer": "alertrelay",
                    "ts": int(time.time()),
                }
            ],
        }
        if self.config.get("channel"):
            message["channel"] = self.config["channel"]
        return message

    def _get_color(self, notification: Notification) -> str:
        if not notification.firing:
            return "good"

        color_map = {
            "critical": "danger",
            "warning": "warning",
        }
        severities = {alert.severity for alert in notification.firing}
        for severity in ("critical", "warning"):
            if severity in severities:
                return color_map[severity]
        return "#808080"


NOTIFIER_TYPES: dict[str, type[Notifier]] = {
    "webhook_configs": WebhookNotifier,
    "discord_configs": DiscordNotifier,
    "slack_configs": SlackNotifier,
}


@dataclass
class Receiver:
    """A named destination and its notifiers."""

    name: str
    notifiers: list[Notifier] = field(default_factory=list)
