"""Pydantic models for alert ingestion.

Producers post batches of alert events. A batch is validated as a whole
before any of it is applied, so a malformed record rejects the entire batch.
"""

from __future__ import annotations

import re
from datetime import datetime
from datetime import timedelta
from datetime import timezone
from typing import Any

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import TypeAdapter
from pydantic import ValidationError
from pydantic import field_validator

from .alerts import Alert
from .alerts import AlertStatus
from .alerts import utcnow
from .errors import IngestionError

LABEL_NAME_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")
MAX_BATCH_SIZE = 10000  # Maximum alerts accepted in one request
MAX_LABELS = 128


def _as_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class AlertEvent(BaseModel):
    """A single alert event as sent by a producer."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    labels: dict[str, str] = Field(..., description="Identifying labels")
    annotations: dict[str, str] = Field(default_factory=dict, description="Informational annotations")
    starts_at: datetime | None = Field(None, alias="startsAt")
    ends_at: datetime | None = Field(None, alias="endsAt")
    status: AlertStatus | None = Field(None, description="Inferred from endsAt when omitted")
    generator_url: str | None = Field(None, alias="generatorURL")

    @field_validator("labels")
    @classmethod
    def validate_labels(cls, v: dict[str, str]) -> dict[str, str]:
        """Require a non-empty set of well-formed label names."""
        if not v:
            raise ValueError("Alert must have at least one label")
        if len(v) > MAX_LABELS:
            raise ValueError(f"Alert cannot have more than {MAX_LABELS} labels")
        for name in v:
            if not LABEL_NAME_RE.match(name):
                raise ValueError(f"Invalid label name: {name!r}")
        return v

    @field_validator("starts_at", "ends_at")
    @classmethod
    def validate_timezone(cls, v: datetime | None) -> datetime | None:
        """Treat naive timestamps as UTC."""
        return _as_utc(v)

    def to_alert(self, now: datetime, resolve_timeout: timedelta) -> Alert:
        """Build the engine's alert from this event.

        A firing event without ``endsAt`` stays firing for
        ``resolve_timeout`` unless the producer sends a heartbeat.
        """
        starts_at = self.starts_at or now
        ends_at = self.ends_at
        status = self.status
        if status is None:
            status = AlertStatus.RESOLVED if ends_at is not None and ends_at <= now else AlertStatus.FIRING

        if status is AlertStatus.FIRING and ends_at is None:
            ends_at = now + resolve_timeout
        elif status is AlertStatus.RESOLVED and ends_at is None:
            ends_at = now

        annotations = dict(self.annotations)
        if self.generator_url:
            annotations.setdefault("generator_url", self.generator_url)

        return Alert(
            labels=dict(self.labels),
            annotations=annotations,
            starts_at=starts_at,
            ends_at=ends_at,
            status=status,
            updated_at=now,
        )


_BATCH_ADAPTER = TypeAdapter(list[AlertEvent])


def parse_batch(raw: Any) -> list[AlertEvent]:
    """Validate a batch of alert events.

    Raises:
        IngestionError: If the batch or any record in it is malformed
    """
    if isinstance(raw, list) and len(raw) > MAX_BATCH_SIZE:
        raise IngestionError(f"Batch too large: {len(raw)} alerts (max {MAX_BATCH_SIZE})")

    try:
        if isinstance(raw, (str, bytes)):
            events = _BATCH_ADAPTER.validate_json(raw)
        else:
            events = _BATCH_ADAPTER.validate_python(raw)
    except ValidationError as e:
        problems = [
            f"{'.'.join(str(part) for part in error['loc']) or '<batch>'}: {error['msg']}"
            for error in e.errors()
        ]
        raise IngestionError("Invalid alert batch: " + "; ".join(problems)) from e

    for index, event in enumerate(events):
        if event.starts_at and event.ends_at and event.ends_at < event.starts_at:
            raise IngestionError(f"Invalid alert batch: {index}: endsAt is before startsAt")
    return events


class IngestResult(BaseModel):
    """Summary of an accepted batch."""

    received: int = 0
    created: int = 0
    updated: int = 0
    resolved: int = 0
    ignored: int = 0
    unrouted: int = 0
    processed_at: datetime = Field(default_factory=utcnow)
