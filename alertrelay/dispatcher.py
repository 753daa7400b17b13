"""Notification dispatcher.

Delivers notifications to every notifier of a receiver, retrying transient
failures with exponential backoff. Each notifier's final outcome, success or
permanent failure, goes into the notification log on its own; a notifier
that ran out of transient retries is left unrecorded so the next flush tries
it again. Sends for one (group, receiver) pair are
strictly ordered through a per-pair lock ("lane"); different pairs run in
parallel so a slow receiver cannot hold up the others.
"""

import asyncio
import time
from collections import deque
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from typing import Any

import structlog

from .alerts import utcnow
from .metrics import NOTIFICATION_LATENCY
from .metrics import NOTIFICATION_RETRIES_TOTAL
from .metrics import NOTIFICATIONS_TOTAL
from .notification_log import NotificationLog
from .notifiers import DeliveryOutcome
from .notifiers import Notification
from .notifiers import Notifier
from .notifiers import Receiver

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_BACKOFF_BASE = 1.0  # seconds
DEFAULT_BACKOFF_MAX = 30.0  # seconds
DEFAULT_HISTORY_SIZE = 1000

logger = structlog.get_logger()


@dataclass
class DeliveryResult:
    """Outcome of dispatching one notification to one receiver.

    Attributes:
        group_key: Notified group
        receiver: Receiver name
        status: Notification status (firing or resolved)
        outcomes: Final outcome per notifier
        attempts: Attempts made per notifier
        started_at: When dispatch started
        finished_at: When the last notifier finished
    """

    group_key: str
    receiver: str
    status: str
    outcomes: dict[str, DeliveryOutcome] = field(default_factory=dict)
    attempts: dict[str, int] = field(default_factory=dict)
    started_at: datetime = field(default_factory=utcnow)
    finished_at: datetime | None = None

    @property
    def success(self) -> bool:
        return bool(self.outcomes) and all(
            outcome is DeliveryOutcome.SUCCESS for outcome in self.outcomes.values()
        )

    @property
    def settled(self) -> bool:
        """No notifier is left waiting for another attempt."""
        return all(outcome is not DeliveryOutcome.TRANSIENT_FAILURE for outcome in self.outcomes.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "group_key": self.group_key,
            "receiver": self.receiver,
            "status": self.status,
            "success": self.success,
            "outcomes": {name: outcome.value for name, outcome in self.outcomes.items()},
            "attempts": self.attempts,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class Dispatcher:
    """Sends notifications and records final delivery outcomes."""

    def __init__(
        self,
        notification_log: NotificationLog,
        receivers: dict[str, Receiver] | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_base: float = DEFAULT_BACKOFF_BASE,
        backoff_max: float = DEFAULT_BACKOFF_MAX,
        history_size: int = DEFAULT_HISTORY_SIZE,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            notification_log: Log updated with each notifier's final outcome
            receivers: Receiver registry, replaced on reload
            max_attempts: Attempts per notifier before giving up on transient failures
            backoff_base: Delay before the first retry (seconds)
            backoff_max: Upper bound for the retry delay (seconds)
            history_size: Number of delivery results kept for inspection
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        self.notification_log = notification_log
        self.receivers = receivers or {}
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.history: deque[DeliveryResult] = deque(maxlen=history_size)
        self._lanes: dict[tuple[str, str], asyncio.Lock] = {}

    def lane(self, group_key: str, receiver: str) -> asyncio.Lock:
        """Lock ordering all sends for a (group, receiver) pair."""
        key = (group_key, receiver)
        lock = self._lanes.get(key)
        if lock is None:
            lock = self._lanes[key] = asyncio.Lock()
        return lock

    def release_lane(self, group_key: str, receiver: str) -> None:
        """Forget the lane of a deleted group unless a send still holds it."""
        lock = self._lanes.get((group_key, receiver))
        if lock is not None and not lock.locked():
            del self._lanes[(group_key, receiver)]

    def backoff(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        return min(self.backoff_base * 2 ** (attempt - 1), self.backoff_max)

    async def send(
        self,
        notification: Notification,
        receiver: Receiver | None = None,
        notifiers: list[Notifier] | None = None,
    ) -> DeliveryResult:
        """Deliver a notification to the notifiers of its receiver.

        Callers that need strict per-pair ordering hold ``lane()`` around
        this call. Failures are recorded, never raised.

        Args:
            notification: Notification to deliver
            receiver: Receiver to use; looked up by name when omitted
            notifiers: Subset of the receiver's notifiers to deliver to;
                all of them when omitted

        Returns:
            The delivery result
        """
        receiver = receiver or self.receivers.get(notification.receiver)
        result = DeliveryResult(
            group_key=notification.group_key,
            receiver=notification.receiver,
            status=notification.status.value,
        )

        if receiver is None:
            logger.error("Unknown receiver", receiver=notification.receiver, group_key=notification.group_key)
            result.outcomes["<missing>"] = DeliveryOutcome.PERMANENT_FAILURE
            result.finished_at = utcnow()
            self.history.append(result)
            return result

        targets = receiver.notifiers if notifiers is None else notifiers
        start_time = time.time()
        finished = await asyncio.gather(
            *(self._deliver_with_retry(notifier, notification) for notifier in targets)
        )
        for notifier, (outcome, attempts) in zip(targets, finished):
            result.outcomes[notifier.name] = outcome
            result.attempts[notifier.name] = attempts

        result.finished_at = utcnow()
        NOTIFICATION_LATENCY.labels(receiver=receiver.name).observe(time.time() - start_time)
        self.history.append(result)

        firing = frozenset(alert.fingerprint for alert in notification.firing)
        resolved = frozenset(alert.fingerprint for alert in notification.resolved)
        for name, outcome in result.outcomes.items():
            if outcome is DeliveryOutcome.TRANSIENT_FAILURE:
                continue
            self.notification_log.record(
                notification.group_key,
                notification.receiver,
                firing=firing,
                resolved=resolved,
                sent_at=notification.created_at,
                notifier=name,
                outcome=outcome.value,
            )

        if result.success:
            NOTIFICATIONS_TOTAL.labels(receiver=receiver.name, status=notification.status.value).inc()
        else:
            logger.error(
                "Notification not delivered",
                receiver=receiver.name,
                group_key=notification.group_key,
                outcomes={name: outcome.value for name, outcome in result.outcomes.items()},
            )

        return result

    async def _deliver_with_retry(self, notifier: Notifier, notification: Notification) -> tuple[DeliveryOutcome, int]:
        attempt = 1
        while True:
            outcome = await notifier.deliver(notification)
            if outcome is not DeliveryOutcome.TRANSIENT_FAILURE or attempt >= self.max_attempts:
                return outcome, attempt

            delay = self.backoff(attempt)
            NOTIFICATION_RETRIES_TOTAL.labels(receiver=notification.receiver).inc()
            logger.info(
                "Retrying notification",
                notifier=notifier.name,
                group_key=notification.group_key,
                attempt=attempt,
                delay_seconds=delay,
            )
            await asyncio.sleep(delay)
            attempt += 1

    def recent_failures(self, limit: int = 100) -> list[DeliveryResult]:
        """Most recent unsuccessful deliveries, newest first."""
        failures = [result for result in self.history if not result.success]
        return failures[::-1][:limit]
