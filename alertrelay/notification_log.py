"""Notification log.

Records, per (group key, receiver, notifier), what was last notified and
when. The scheduler consults it to decide whether a flush is a change, a
repeat, a resolve or a no-op for each notifier, which keeps sends idempotent
across reloads and, when a snapshot path is configured, across restarts.

A permanent delivery failure is recorded like a success: the notifier is not
tried again for the same alert set until the repeat interval comes around.
"""

import hashlib
import json
import os
import tempfile
from collections.abc import Iterable
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from datetime import timedelta
from pathlib import Path

import structlog

from .alerts import utcnow

logger = structlog.get_logger()

SNAPSHOT_VERSION = 2


def alerts_hash(firing: frozenset[str], resolved: frozenset[str]) -> str:
    """Stable hash of a notified alert set."""
    digest = hashlib.sha256()
    for fingerprint in sorted(firing):
        digest.update(f"f:{fingerprint};".encode())
    for fingerprint in sorted(resolved):
        digest.update(f"r:{fingerprint};".encode())
    return digest.hexdigest()


@dataclass
class NotificationRecord:
    """What one notifier of a receiver was last told about a group.

    Attributes:
        group_key: Group the record belongs to
        receiver: Receiver name
        notifier: Notifier name within the receiver
        firing: Fingerprints reported as firing in the last notification
        resolved: Fingerprints reported as resolved in the last notification
        last_sent_at: When the last notification was delivered
        last_resolved_sent_at: When the last all-resolved notification was delivered
        outcome: Final delivery outcome of the last notification
    """

    group_key: str
    receiver: str
    notifier: str = ""
    firing: frozenset[str] = field(default_factory=frozenset)
    resolved: frozenset[str] = field(default_factory=frozenset)
    last_sent_at: datetime | None = None
    last_resolved_sent_at: datetime | None = None
    outcome: str = "success"

    @property
    def key(self) -> tuple[str, str, str]:
        return self.group_key, self.receiver, self.notifier

    @property
    def alerts_hash(self) -> str:
        return alerts_hash(self.firing, self.resolved)

    def needs_update(
        self,
        firing: frozenset[str],
        resolved: frozenset[str],
        repeat_interval: timedelta,
        send_resolved: bool,
        now: datetime,
    ) -> bool:
        """Whether a notification with this alert set should go out now."""
        if not firing.issubset(self.firing):
            return True
        # Everything previously notified has resolved
        if not firing and self.firing:
            return True
        if send_resolved and not resolved.issubset(self.resolved):
            return True
        if firing and self.last_sent_at is not None:
            return now - self.last_sent_at >= repeat_interval
        return False

    def to_dict(self) -> dict[str, object]:
        return {
            "group_key": self.group_key,
            "receiver": self.receiver,
            "notifier": self.notifier,
            "outcome": self.outcome,
            "firing": sorted(self.firing),
            "resolved": sorted(self.resolved),
            "alerts_hash": self.alerts_hash,
            "last_sent_at": self.last_sent_at.isoformat() if self.last_sent_at else None,
            "last_resolved_sent_at": (
                self.last_resolved_sent_at.isoformat() if self.last_resolved_sent_at else None
            ),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "NotificationRecord":
        def parse(value: str | None) -> datetime | None:
            return datetime.fromisoformat(value) if value else None

        return cls(
            group_key=data["group_key"],
            receiver=data["receiver"],
            notifier=data.get("notifier", ""),
            outcome=data.get("outcome", "success"),
            firing=frozenset(data.get("firing", [])),
            resolved=frozenset(data.get("resolved", [])),
            last_sent_at=parse(data.get("last_sent_at")),
            last_resolved_sent_at=parse(data.get("last_resolved_sent_at")),
        )


class NotificationLog:
    """In-memory notification records with optional JSON snapshots."""

    def __init__(self, retention: timedelta, snapshot_path: str | Path | None = None) -> None:
        self.retention = retention
        self.snapshot_path = Path(snapshot_path) if snapshot_path else None
        self._records: dict[tuple[str, str, str], NotificationRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def get(self, group_key: str, receiver: str, notifier: str = "") -> NotificationRecord | None:
        return self._records.get((group_key, receiver, notifier))

    def records(self) -> list[NotificationRecord]:
        return list(self._records.values())

    def should_notify(
        self,
        group_key: str,
        receiver: str,
        firing: frozenset[str],
        resolved: frozenset[str],
        repeat_interval: timedelta,
        send_resolved: bool,
        now: datetime | None = None,
        notifier: str = "",
    ) -> bool:
        """Decide whether a group's current alert set must go to a notifier."""
        record = self.get(group_key, receiver, notifier)
        if record is None:
            # Nothing was ever announced, so there is nothing to resolve either
            return bool(firing)
        return record.needs_update(firing, resolved, repeat_interval, send_resolved, now or utcnow())

    def record(
        self,
        group_key: str,
        receiver: str,
        firing: frozenset[str],
        resolved: frozenset[str],
        sent_at: datetime | None = None,
        notifier: str = "",
        outcome: str = "success",
    ) -> NotificationRecord:
        """Store the final outcome of a notification to one notifier."""
        sent_at = sent_at or utcnow()
        record = NotificationRecord(
            group_key=group_key,
            receiver=receiver,
            notifier=notifier,
            firing=firing,
            resolved=resolved,
            last_sent_at=sent_at,
            outcome=outcome,
        )
        previous = self.get(group_key, receiver, notifier)
        if not firing:
            record.last_resolved_sent_at = sent_at
            # Keep the time of the last firing notification for reference
            if previous is not None:
                record.last_sent_at = previous.last_sent_at or sent_at
        self._records[record.key] = record
        return record

    def gc(self, now: datetime | None = None, keep: Iterable[tuple[str, str]] = ()) -> int:
        """Drop records older than the retention window.

        Args:
            now: Current time
            keep: (group key, receiver) pairs that are still live; their
                records drive repeat decisions however old they are

        Returns:
            Number of records removed
        """
        now = now or utcnow()
        keep = set(keep)
        expired = [
            key for key, record in self._records.items()
            if (record.group_key, record.receiver) not in keep
            and max(filter(None, (record.last_sent_at, record.last_resolved_sent_at)), default=now)
            < now - self.retention
        ]
        for key in expired:
            del self._records[key]

        if expired:
            logger.debug("Notification log garbage collected", removed=len(expired))
        return len(expired)

    def load(self) -> int:
        """Load records from the snapshot file, if one exists.

        Returns:
            Number of records loaded
        """
        if not self.snapshot_path or not self.snapshot_path.exists():
            return 0

        with open(self.snapshot_path, encoding="utf-8") as f:
            data = json.load(f)

        if data.get("version") != SNAPSHOT_VERSION:
            logger.warning(
                "Ignoring notification log snapshot with unknown version",
                path=str(self.snapshot_path),
                version=data.get("version"),
            )
            return 0

        for item in data.get("records", []):
            record = NotificationRecord.from_dict(item)
            self._records[record.key] = record

        logger.info("Notification log loaded", path=str(self.snapshot_path), records=len(self._records))
        return len(self._records)

    def save(self) -> None:
        """Atomically write the snapshot file."""
        if not self.snapshot_path:
            return

        self.snapshot_path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "version": SNAPSHOT_VERSION,
            "records": [record.to_dict() for record in self._records.values()],
        }
        fd, tmp_path = tempfile.mkstemp(dir=self.snapshot_path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
            os.replace(tmp_path, self.snapshot_path)
        except OSError:
            Path(tmp_path).unlink(missing_ok=True)
            raise
