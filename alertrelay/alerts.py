"""Alert state and grouping.

This module holds the engine's view of the world:
- ``Alert``: one alert identified by the fingerprint of its label set
- ``AlertGroup``: alerts batched together under one route
- ``AlertStore``: the single owner of alerts and group membership

Group membership is mutated only through the store, which serializes
changes per group key with an ``asyncio.Lock``.
"""

from __future__ import annotations

import asyncio
import hashlib
from collections import defaultdict
from collections.abc import Iterable
from collections.abc import Mapping
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from datetime import timezone
from enum import Enum
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from .routing import Route

logger = structlog.get_logger()

# Separator bytes that can never appear in valid UTF-8 label text
LABEL_SEPARATOR = b"\xff"
FINGERPRINT_LENGTH = 16

# group_by value that groups by every label of the alert
GROUP_BY_ALL = "..."


class AlertStatus(str, Enum):
    """Alert status as reported by the producer."""

    FIRING = "firing"
    RESOLVED = "resolved"


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def fingerprint_labels(labels: Mapping[str, str]) -> str:
    """Compute the identity fingerprint of a label set.

    The hash covers label names and values in sorted order, so it does not
    depend on insertion order, annotations or timestamps.
    """
    digest = hashlib.sha256()
    for name in sorted(labels):
        digest.update(name.encode("utf-8"))
        digest.update(LABEL_SEPARATOR)
        digest.update(labels[name].encode("utf-8"))
        digest.update(LABEL_SEPARATOR)
    return digest.hexdigest()[:FINGERPRINT_LENGTH]


def group_labels(labels: Mapping[str, str], group_by: Iterable[str]) -> dict[str, str]:
    """Project a label set onto the group_by label names."""
    names = list(group_by)
    if GROUP_BY_ALL in names:
        return dict(sorted(labels.items()))
    return {name: labels[name] for name in sorted(names) if name in labels}


def group_key(route: Route, labels: Mapping[str, str]) -> str:
    """Deterministic key of the group an alert falls into under a route."""
    projected = group_labels(labels, route.group_by)
    rendered = ",".join(f'{name}="{value}"' for name, value in projected.items())
    return f"{route.id}:{{{rendered}}}"


@dataclass
class Alert:
    """A single alert.

    Attributes:
        labels: Identifying labels
        annotations: Informational annotations, not part of the identity
        starts_at: When the current occurrence started
        ends_at: When the alert resolved, or when it will be considered
            resolved if no heartbeat arrives
        status: Last reported status
        updated_at: When the engine last received an event for this alert
    """

    labels: dict[str, str]
    annotations: dict[str, str] = field(default_factory=dict)
    starts_at: datetime = field(default_factory=utcnow)
    ends_at: datetime | None = None
    status: AlertStatus = AlertStatus.FIRING
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def fingerprint(self) -> str:
        return fingerprint_labels(self.labels)

    @property
    def name(self) -> str:
        return self.labels.get("alertname", "")

    @property
    def severity(self) -> str:
        return self.labels.get("severity", "")

    def is_resolved(self, now: datetime | None = None) -> bool:
        """Whether the alert counts as resolved at ``now``.

        A firing alert whose ``ends_at`` has passed is resolved: the producer
        stopped sending heartbeats.
        """
        if self.status is AlertStatus.RESOLVED:
            return True
        now = now or utcnow()
        return self.ends_at is not None and self.ends_at <= now

    def is_firing(self, now: datetime | None = None) -> bool:
        return not self.is_resolved(now)

    def resolved_since(self) -> datetime | None:
        """When the alert resolved, if it has."""
        if self.status is AlertStatus.RESOLVED:
            return self.ends_at or self.updated_at
        return None

    def to_dict(self, now: datetime | None = None) -> dict[str, object]:
        """Serialize in the shape used by webhook payloads and the API."""
        resolved = self.is_resolved(now)
        return {
            "status": (AlertStatus.RESOLVED if resolved else AlertStatus.FIRING).value,
            "labels": dict(self.labels),
            "annotations": dict(self.annotations),
            "startsAt": self.starts_at.isoformat(),
            "endsAt": self.ends_at.isoformat() if self.ends_at else None,
            "fingerprint": self.fingerprint,
        }


@dataclass
class AlertGroup:
    """Alerts sharing a route and a group_by projection.

    Attributes:
        key: Group key (see ``group_key``)
        route: Route the group belongs to
        labels: The group_by projection shared by all members
        fingerprints: Current members
        created_at: When the group materialized
    """

    key: str
    route: Route
    labels: dict[str, str]
    fingerprints: set[str] = field(default_factory=set)
    created_at: datetime = field(default_factory=utcnow)

    @property
    def receiver(self) -> str:
        return self.route.receiver

    def __len__(self) -> int:
        return len(self.fingerprints)


class AlertStore:
    """Owner of alert state and group membership.

    Alerts are keyed by fingerprint. Groups materialize lazily when their
    first alert arrives and are deleted once empty.
    """

    def __init__(self) -> None:
        self.alerts: dict[str, Alert] = {}
        self.groups: dict[str, AlertGroup] = {}
        self._group_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def __len__(self) -> int:
        return len(self.alerts)

    def get(self, fingerprint: str) -> Alert | None:
        return self.alerts.get(fingerprint)

    def upsert(self, alert: Alert) -> tuple[AlertStatus | None, Alert | None]:
        """Insert or merge an alert by fingerprint.

        Args:
            alert: Incoming alert event

        Returns:
            The prior status (None for a new alert) and the stored alert. A
            resolved event for an unknown fingerprint is not stored and
            returns ``(None, None)``.
        """
        fingerprint = alert.fingerprint
        existing = self.alerts.get(fingerprint)

        if existing is None:
            if alert.status is AlertStatus.RESOLVED:
                logger.debug("Ignoring resolved event for unknown alert", fingerprint=fingerprint)
                return None, None
            self.alerts[fingerprint] = alert
            return None, alert

        prior = AlertStatus.RESOLVED if existing.is_resolved(alert.updated_at) else AlertStatus.FIRING

        if alert.status is AlertStatus.FIRING and prior is AlertStatus.RESOLVED:
            # A new occurrence of the same condition
            existing.starts_at = alert.starts_at
        elif alert.starts_at < existing.starts_at:
            existing.starts_at = alert.starts_at

        existing.status = alert.status
        existing.ends_at = alert.ends_at
        existing.annotations = dict(alert.annotations)
        existing.updated_at = alert.updated_at
        return prior, existing

    def groups_affected(self, alert: Alert, routes: Iterable[Route]) -> list[str]:
        """Group keys the alert maps to under each of the given routes."""
        return [group_key(route, alert.labels) for route in routes]

    async def add_to_group(self, route: Route, alert: Alert) -> tuple[AlertGroup, bool]:
        """Add an alert to its group under a route.

        Returns:
            The group and whether membership changed
        """
        key = group_key(route, alert.labels)
        async with self._group_locks[key]:
            group = self.groups.get(key)
            if group is None:
                group = AlertGroup(key=key, route=route, labels=group_labels(alert.labels, route.group_by))
                self.groups[key] = group
                logger.debug("Alert group created", group_key=key, receiver=route.receiver)

            added = alert.fingerprint not in group.fingerprints
            group.fingerprints.add(alert.fingerprint)
            return group, added

    async def prune(self, key: str, fingerprints: Iterable[str]) -> bool:
        """Remove members from a group, deleting it when it empties.

        Returns:
            True if the group no longer exists
        """
        async with self._group_locks[key]:
            group = self.groups.get(key)
            if group is None:
                return True

            group.fingerprints.difference_update(fingerprints)
            if not group.fingerprints:
                del self.groups[key]
                self._group_locks.pop(key, None)
                logger.debug("Alert group deleted", group_key=key)
                return True
            return False

    async def remove(self, fingerprint: str) -> list[str]:
        """Delete an alert and detach it from every group.

        Returns:
            Keys of the groups that became empty and were deleted
        """
        self.alerts.pop(fingerprint, None)
        emptied = []
        for key in [k for k, g in self.groups.items() if fingerprint in g.fingerprints]:
            if await self.prune(key, [fingerprint]):
                emptied.append(key)
        return emptied

    def members(self, group: AlertGroup) -> list[Alert]:
        """Current alerts of a group, ordered by start time then fingerprint."""
        alerts = [self.alerts[fp] for fp in group.fingerprints if fp in self.alerts]
        return sorted(alerts, key=lambda a: (a.starts_at, a.fingerprint))

    def active(self, now: datetime | None = None) -> list[Alert]:
        """All alerts firing at ``now``."""
        now = now or utcnow()
        return [alert for alert in self.alerts.values() if alert.is_firing(now)]

    def clear_groups(self) -> list[AlertGroup]:
        """Drop every group, returning the dropped groups (used on reload)."""
        dropped = list(self.groups.values())
        self.groups = {}
        self._group_locks = defaultdict(asyncio.Lock)
        return dropped
