"""Alert engine.

The engine owns every piece of runtime state: the alert store, the
notification log, the dispatcher, the scheduler and the current
``RuntimeConfig``. Nothing lives in module-level singletons; create one
engine, ``initialize()`` it and ``close()`` it when done.

Examples:
    >>> engine = AlertEngine(config)
    >>> await engine.initialize()
    >>> await engine.ingest([{"labels": {"alertname": "InstanceDown"}, "status": "firing"}])
    >>> await engine.close()
"""

import asyncio
import time
from collections import defaultdict
from collections.abc import Callable
from datetime import datetime
from datetime import timedelta
from pathlib import Path
from typing import Any

import httpx
import structlog

from .alerts import Alert
from .alerts import AlertStatus
from .alerts import AlertStore
from .alerts import utcnow
from .config import Settings
from .config import default_config
from .dispatcher import DEFAULT_BACKOFF_BASE
from .dispatcher import DEFAULT_BACKOFF_MAX
from .dispatcher import DEFAULT_MAX_ATTEMPTS
from .dispatcher import Dispatcher
from .durations import parse_duration
from .errors import ConfigValidationError
from .errors import IngestionError
from .errors import RoutingMiss
from .metrics import ACTIVE_ALERTS
from .metrics import ALERT_GROUPS
from .metrics import ALERTS_INVALID_TOTAL
from .metrics import ALERTS_RECEIVED_TOTAL
from .metrics import CONFIG_RELOADS_TOTAL
from .metrics import ROUTING_MISSES_TOTAL
from .models import IngestResult
from .models import parse_batch
from .notification_log import NotificationLog
from .scheduler import NotificationScheduler
from .schema import EngineConfig
from .schema import RuntimeConfig
from .schema import build_runtime
from .schema import load_config

DEFAULT_ALERT_RETENTION = timedelta(hours=1)
DEFAULT_MAINTENANCE_INTERVAL = timedelta(seconds=30)
SHUTDOWN_TIMEOUT = 10.0  # seconds

logger = structlog.get_logger()


def read_config_file(path: str | Path) -> EngineConfig:
    """Load a JSON routing configuration file.

    Raises:
        ConfigValidationError: If the file is missing or invalid
    """
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigValidationError(f"Cannot read config file {path}: {e}") from e
    return load_config(text)


def _warn_empty_receivers(runtime: RuntimeConfig) -> None:
    # Alerts routed here are grouped but never sent anywhere
    for name, receiver in sorted(runtime.receivers.items()):
        if not receiver.notifiers:
            logger.warning("Receiver has no notifiers", receiver=name)


class AlertEngine:
    """Receives alert events and drives routing, grouping and notification.

    This engine provides:
    - Batch ingestion with all-or-nothing validation
    - Routing and lazy grouping of alerts
    - Inhibition-aware, timer-driven notifications
    - Expiry of alerts without heartbeat and garbage collection
    - Atomic configuration reload
    """

    def __init__(
        self,
        config: EngineConfig | dict[str, Any] | str,
        alert_retention: timedelta = DEFAULT_ALERT_RETENTION,
        maintenance_interval: timedelta = DEFAULT_MAINTENANCE_INTERVAL,
        notification_log_path: str | Path | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_base: float = DEFAULT_BACKOFF_BASE,
        backoff_max: float = DEFAULT_BACKOFF_MAX,
        external_url: str = "",
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """Initialize the engine.

        Args:
            config: Routing configuration (model, mapping or JSON text)
            alert_retention: How long resolved alerts are kept
            maintenance_interval: Period of the expiry and GC loop
            notification_log_path: Optional JSON snapshot of the notification log
            max_attempts: Delivery attempts per notifier
            backoff_base: First retry delay (seconds)
            backoff_max: Upper bound for retry delays (seconds)
            external_url: Base URL used in notification links
            client: Shared HTTP client for notifiers
            clock: Time source

        Raises:
            ConfigValidationError: If the configuration is invalid
        """
        if not isinstance(config, EngineConfig):
            config = load_config(config)

        self._client = client
        self._clock = clock
        self.alert_retention = alert_retention
        self.maintenance_interval = maintenance_interval

        self.runtime: RuntimeConfig = build_runtime(config, client)
        self.store = AlertStore()
        self.notification_log = NotificationLog(alert_retention, notification_log_path)
        self.dispatcher = Dispatcher(
            self.notification_log,
            self.runtime.receivers,
            max_attempts=max_attempts,
            backoff_base=backoff_base,
            backoff_max=backoff_max,
        )
        self.scheduler = NotificationScheduler(
            self.store,
            self.dispatcher,
            self.notification_log,
            clock=clock,
            external_url=external_url,
        )

        # Background tasks
        self.maintenance_task: asyncio.Task | None = None
        self.shutdown_event = asyncio.Event()
        self.last_maintenance: datetime | None = None
        self.started_at: datetime | None = None
        self._reload_lock = asyncio.Lock()
        self._owns_client = False

        logger.info(
            "AlertEngine initialized",
            routes=sum(1 for _ in self.runtime.tree.walk()),
            receivers=len(self.runtime.receivers),
            inhibit_rules=len(self.runtime.inhibitor),
        )
        _warn_empty_receivers(self.runtime)

    @classmethod
    def from_settings(cls, settings: Settings) -> "AlertEngine":
        """Build an engine from service settings.

        Uses the configured routing file, or the default routing when none
        is set. The engine owns the HTTP client it creates here.
        """
        if settings.config_file:
            config = read_config_file(settings.config_file)
        else:
            config = load_config(default_config(settings))

        # Fail on a bad configuration before any client is created
        build_runtime(config)

        engine = cls(
            config,
            alert_retention=parse_duration(settings.alert_retention),
            maintenance_interval=parse_duration(settings.maintenance_interval),
            notification_log_path=settings.notification_log_path,
            max_attempts=settings.max_delivery_attempts,
            backoff_base=settings.backoff_base_seconds,
            backoff_max=settings.backoff_max_seconds,
            external_url=settings.external_url,
            client=httpx.AsyncClient(timeout=settings.http_timeout_seconds),
        )
        engine._owns_client = True
        return engine

    async def initialize(self) -> None:
        """Load persisted state and start background tasks."""
        try:
            self.notification_log.load()
            self.started_at = self._clock()
            self.maintenance_task = asyncio.create_task(
                self._maintenance_loop(),
                name="alert_engine_maintenance",
            )
            logger.info("AlertEngine started successfully")

        except Exception as e:
            logger.error("Failed to initialize AlertEngine", error=str(e))
            raise RuntimeError(f"AlertEngine initialization failed: {e}") from e

    async def close(self) -> None:
        """Stop background tasks, cancel timers and persist state."""
        logger.info("Shutting down AlertEngine")
        self.shutdown_event.set()

        if self.maintenance_task and not self.maintenance_task.done():
            self.maintenance_task.cancel()
            try:
                await asyncio.wait_for(self.maintenance_task, timeout=SHUTDOWN_TIMEOUT)
            except (TimeoutError, asyncio.CancelledError):
                logger.debug("Maintenance task stopped")

        await self.scheduler.close()

        try:
            self.notification_log.save()
        except OSError as e:
            logger.error("Failed to persist notification log", error=str(e))

        if self._owns_client and self._client is not None:
            await self._client.aclose()

        logger.info("AlertEngine shutdown complete")

    async def ingest(self, raw: Any) -> IngestResult:
        """Accept a batch of alert events.

        Args:
            raw: Parsed JSON (a list of event mappings) or raw JSON text

        Returns:
            Counts of what happened to the batch

        Raises:
            IngestionError: If the batch is malformed; nothing was applied
        """
        try:
            events = parse_batch(raw)
        except IngestionError as e:
            ALERTS_INVALID_TOTAL.inc()
            logger.warning("Alert batch rejected", error=str(e))
            raise

        runtime = self.runtime
        now = self._clock()
        result = IngestResult(received=len(events), processed_at=now)

        for event in events:
            alert = event.to_alert(now, runtime.resolve_timeout)
            await self._process(alert, runtime, now, result)

        self._update_gauges()
        logger.debug(
            "Alert batch processed",
            received=result.received,
            created=result.created,
            resolved=result.resolved,
            unrouted=result.unrouted,
        )
        return result

    async def _process(self, alert: Alert, runtime: RuntimeConfig, now: datetime, result: IngestResult) -> None:
        ALERTS_RECEIVED_TOTAL.labels(status=alert.status.value).inc()

        prior, stored = self.store.upsert(alert)
        if stored is None:
            result.ignored += 1
            return

        current = AlertStatus.RESOLVED if stored.is_resolved(now) else AlertStatus.FIRING
        if prior is None:
            result.created += 1
        else:
            result.updated += 1
        if prior is AlertStatus.FIRING and current is AlertStatus.RESOLVED:
            result.resolved += 1

        changed = prior is not current
        if not changed and current is AlertStatus.RESOLVED:
            return

        try:
            matches = runtime.tree.route(stored)
        except RoutingMiss as e:
            ROUTING_MISSES_TOTAL.inc()
            result.unrouted += 1
            logger.warning("Alert matched no route", fingerprint=e.fingerprint, labels=e.labels)
            return

        for route, receiver_name in matches:
            group, added = await self.store.add_to_group(route, stored)
            if added or changed:
                self.scheduler.notify_changed(group, runtime.receivers[receiver_name], runtime.inhibitor)

    async def reload(self, config: EngineConfig | dict[str, Any] | str) -> RuntimeConfig:
        """Atomically replace routing, inhibition and receivers.

        Timers armed under the old configuration fire once under the old
        rules; current alerts are regrouped under the new ones.

        Raises:
            ConfigValidationError: If the new configuration is invalid;
                the old one stays in force
        """
        async with self._reload_lock:
            try:
                if not isinstance(config, EngineConfig):
                    config = load_config(config)
                runtime = build_runtime(config, self._client)
            except ConfigValidationError as e:
                CONFIG_RELOADS_TOTAL.labels(result="failure").inc()
                logger.error("Configuration reload failed", problems=e.problems)
                raise

            retired = self.scheduler.retire_all()
            self.store.clear_groups()
            self.runtime = runtime
            self.dispatcher.receivers = runtime.receivers

            now = self._clock()
            regrouped = 0
            for alert in list(self.store.alerts.values()):
                if alert.is_resolved(now):
                    continue
                for route, receiver_name in runtime.tree.match(alert):
                    group, _ = await self.store.add_to_group(route, alert)
                    self.scheduler.notify_changed(group, runtime.receivers[receiver_name], runtime.inhibitor)
                    regrouped += 1

            CONFIG_RELOADS_TOTAL.labels(result="success").inc()
            _warn_empty_receivers(runtime)
            self._update_gauges()
            logger.info(
                "Configuration reloaded",
                retired_schedules=retired,
                regrouped=regrouped,
                groups=len(self.store.groups),
            )
            return runtime

    async def reload_from_file(self, path: str | Path) -> RuntimeConfig:
        """Reload the configuration from a JSON file."""
        return await self.reload(read_config_file(path))

    async def _maintenance_loop(self) -> None:
        """Background loop expiring and garbage-collecting alerts."""
        logger.info("Starting maintenance loop")

        while not self.shutdown_event.is_set():
            try:
                await asyncio.sleep(self.maintenance_interval.total_seconds())
                await self.run_maintenance()

            except asyncio.CancelledError:
                logger.info("Maintenance loop cancelled")
                break
            except Exception as e:
                logger.error("Error in maintenance loop", error=str(e))

        logger.info("Maintenance loop ended")

    async def run_maintenance(self) -> dict[str, int]:
        """Expire silent alerts, garbage-collect old ones and persist state.

        Returns:
            Counts of expired alerts, removed alerts and removed log records
        """
        start_time = time.time()
        now = self._clock()
        runtime = self.runtime

        expired = 0
        for alert in list(self.store.alerts.values()):
            if alert.status is AlertStatus.FIRING and alert.is_resolved(now):
                alert.status = AlertStatus.RESOLVED
                expired += 1
                for group in [g for g in self.store.groups.values() if alert.fingerprint in g.fingerprints]:
                    receiver = runtime.receivers.get(group.receiver)
                    if receiver is not None:
                        self.scheduler.notify_changed(group, receiver, runtime.inhibitor)

        cutoff = now - self.alert_retention
        removed = 0
        for alert in list(self.store.alerts.values()):
            resolved_since = alert.resolved_since()
            if resolved_since is not None and resolved_since < cutoff:
                for key in await self.store.remove(alert.fingerprint):
                    self.scheduler.cancel_group(key)
                removed += 1

        live = {(group.key, group.receiver) for group in self.store.groups.values()}
        log_removed = self.notification_log.gc(now, keep=live | self.scheduler.live_keys())
        try:
            self.notification_log.save()
        except OSError as e:
            logger.error("Failed to persist notification log", error=str(e))

        self.last_maintenance = now
        self._update_gauges()
        logger.debug(
            "Maintenance completed",
            expired=expired,
            removed=removed,
            log_records_removed=log_removed,
            processing_time_ms=(time.time() - start_time) * 1000,
        )
        return {"expired": expired, "removed": removed, "log_records_removed": log_removed}

    def _update_gauges(self) -> None:
        now = self._clock()
        counts: defaultdict[str, int] = defaultdict(int)
        inhibited = self.runtime.inhibitor.inhibited(self.store.active(now), now)
        for alert in self.store.alerts.values():
            if alert.is_resolved(now):
                counts["resolved"] += 1
            elif alert.fingerprint in inhibited:
                counts["inhibited"] += 1
            else:
                counts["active"] += 1

        for state in ("active", "inhibited", "resolved"):
            ACTIVE_ALERTS.labels(state=state).set(counts[state])
        ALERT_GROUPS.set(len(self.store.groups))

    def get_alerts(self, active_only: bool = False, receiver: str | None = None) -> list[dict[str, Any]]:
        """Current alerts with their inhibition state and receivers.

        Args:
            active_only: Only return firing, non-inhibited alerts
            receiver: Only return alerts routed to this receiver
        """
        now = self._clock()
        inhibited = self.runtime.inhibitor.inhibited(self.store.active(now), now)
        receivers_by_fp: defaultdict[str, set[str]] = defaultdict(set)
        for group in self.store.groups.values():
            for fingerprint in group.fingerprints:
                receivers_by_fp[fingerprint].add(group.receiver)

        alerts = []
        for alert in sorted(self.store.alerts.values(), key=lambda a: a.starts_at, reverse=True):
            is_inhibited = alert.fingerprint in inhibited
            if active_only and (alert.is_resolved(now) or is_inhibited):
                continue
            receivers = sorted(receivers_by_fp.get(alert.fingerprint, ()))
            if receiver and receiver not in receivers:
                continue

            data = alert.to_dict(now)
            data["inhibited"] = is_inhibited
            data["receivers"] = receivers
            data["updatedAt"] = alert.updated_at.isoformat()
            alerts.append(data)
        return alerts

    def get_groups(self) -> list[dict[str, Any]]:
        """Current alert groups with their members and schedule state."""
        now = self._clock()
        groups = []
        for group in self.store.groups.values():
            sched = self.scheduler.get(group.key, group.receiver)
            groups.append({
                "groupKey": group.key,
                "receiver": group.receiver,
                "route": group.route.id,
                "labels": group.labels,
                "alerts": [alert.to_dict(now) for alert in self.store.members(group)],
                "schedule": sched.to_dict() if sched else None,
            })
        return sorted(groups, key=lambda g: g["groupKey"])

    def get_stats(self) -> dict[str, Any]:
        """Get engine statistics."""
        now = self._clock()
        return {
            "alerts": len(self.store),
            "active_alerts": len(self.store.active(now)),
            "groups": len(self.store.groups),
            "schedules": len(self.scheduler),
            "routes": sum(1 for _ in self.runtime.tree.walk()),
            "receivers": sorted(self.runtime.receivers),
            "inhibit_rules": len(self.runtime.inhibitor),
            "notification_log_records": len(self.notification_log),
            "recent_delivery_failures": [r.to_dict() for r in self.dispatcher.recent_failures(10)],
            "last_maintenance": self.last_maintenance.isoformat() if self.last_maintenance else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "maintenance_interval_seconds": self.maintenance_interval.total_seconds(),
        }
