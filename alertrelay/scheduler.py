"""Notification scheduling.

Each (group, receiver) pair gets a ``GroupSchedule`` with a single timer:

- a new group waits ``group_wait`` from its first alert; alerts joining in
  the meantime do not move the deadline but are part of the notification,
  which reflects membership when the timer fires
- after a flush the group is re-evaluated every ``group_interval`` while it
  has firing alerts, which batches bursts of changes into one update and is
  when repeat notifications become due
- whether a flush actually sends is decided per notifier against the
  notification log: new firing alerts, a fully resolved group, newly
  resolved alerts (if the notifier wants them) or an elapsed repeat
  interval; notifiers already up to date are left out of the send

At most one flush per pair is in flight; timers firing during a send are
coalesced into a single re-run.
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from datetime import timedelta
from enum import Enum

import structlog

from .alerts import AlertGroup
from .alerts import AlertStore
from .alerts import utcnow
from .dispatcher import Dispatcher
from .durations import format_duration
from .inhibition import InhibitionEngine
from .metrics import NOTIFICATIONS_COALESCED_TOTAL
from .notification_log import NotificationLog
from .notifiers import Notification
from .notifiers import Receiver

SHUTDOWN_TIMEOUT = 10.0  # seconds

logger = structlog.get_logger()


class ScheduleState(str, Enum):
    """Lifecycle of a (group, receiver) schedule."""

    PENDING = "pending"
    SENDING = "sending"
    WAITING = "waiting"
    RESOLVED_PENDING = "resolved_pending"
    IDLE = "idle"


@dataclass(eq=False)
class GroupSchedule:
    """Timer state for one (group, receiver) pair.

    The receiver and inhibition rules are captured when the schedule is
    created so that a reload never applies half of a new policy to a timer
    that was armed under the old one.
    """

    group: AlertGroup
    receiver: Receiver
    inhibitor: InhibitionEngine
    created_at: datetime
    state: ScheduleState = ScheduleState.PENDING
    deadline: datetime | None = None
    timer: asyncio.Task | None = None
    flushing: bool = False
    rerun: bool = False
    retired: bool = False
    flushes: int = 0
    sends: int = 0
    last_flush_at: datetime | None = None
    tasks: set[asyncio.Task] = field(default_factory=set)

    @property
    def key(self) -> tuple[str, str]:
        return self.group.key, self.group.receiver

    def to_dict(self) -> dict[str, object]:
        return {
            "group_key": self.group.key,
            "receiver": self.group.receiver,
            "state": self.state.value,
            "deadline": self.deadline.isoformat() if self.deadline else None,
            "flushes": self.flushes,
            "sends": self.sends,
            "retired": self.retired,
        }


class NotificationScheduler:
    """Owns the group wait / group interval / repeat timers."""

    def __init__(
        self,
        store: AlertStore,
        dispatcher: Dispatcher,
        notification_log: NotificationLog,
        clock: Callable[[], datetime] = utcnow,
        external_url: str = "",
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.notification_log = notification_log
        self.external_url = external_url
        self._clock = clock
        self._schedules: dict[tuple[str, str], GroupSchedule] = {}
        self._retired: set[GroupSchedule] = set()

    def __len__(self) -> int:
        return len(self._schedules)

    def get(self, group_key: str, receiver: str) -> GroupSchedule | None:
        return self._schedules.get((group_key, receiver))

    def live_keys(self) -> set[tuple[str, str]]:
        """(group key, receiver) pairs with a current or retired schedule."""
        return set(self._schedules) | {sched.key for sched in self._retired}

    def notify_changed(self, group: AlertGroup, receiver: Receiver, inhibitor: InhibitionEngine) -> GroupSchedule:
        """React to a membership or status change in a group.

        Args:
            group: The changed group
            receiver: Receiver the group's route points to
            inhibitor: Inhibition rules in force

        Returns:
            The group's schedule
        """
        sched = self._schedules.get((group.key, group.receiver))

        if sched is not None and sched.group is not group:
            # The group was deleted and recreated under the same key
            self._retire(sched)
            sched = None

        if sched is None:
            sched = GroupSchedule(group=group, receiver=receiver, inhibitor=inhibitor, created_at=self._clock())
            self._schedules[sched.key] = sched
            self._arm(sched, group.route.group_wait)
            logger.debug(
                "Group wait started",
                group_key=group.key,
                receiver=group.receiver,
                group_wait=format_duration(group.route.group_wait),
            )
            return sched

        # The initial wait is anchored to the first trigger
        if sched.state is ScheduleState.PENDING:
            return sched

        now = self._clock()
        if all(alert.is_resolved(now) for alert in self.store.members(group)):
            sched.state = ScheduleState.RESOLVED_PENDING
        self._arm(sched, group.route.group_interval)
        return sched

    def cancel_group(self, group_key: str) -> int:
        """Cancel every schedule of a deleted group.

        Returns:
            Number of schedules cancelled
        """
        cancelled = [sched for key, sched in self._schedules.items() if key[0] == group_key]
        for sched in cancelled:
            self._discard(sched)
        return len(cancelled)

    def retire_all(self) -> int:
        """Retire every schedule ahead of a configuration reload.

        Armed timers still fire once under the rules they were scheduled
        with; afterwards the schedules stop.

        Returns:
            Number of retired schedules
        """
        schedules = list(self._schedules.values())
        for sched in schedules:
            self._retire(sched)
        return len(schedules)

    async def close(self) -> None:
        """Cancel all timers and in-flight flushes."""
        tasks = []
        for sched in list(self._schedules.values()) + list(self._retired):
            if sched.timer is not None:
                sched.timer.cancel()
            tasks.extend(sched.tasks)
            for task in sched.tasks:
                task.cancel()

        self._schedules.clear()
        self._retired.clear()

        if tasks:
            done, pending = await asyncio.wait(tasks, timeout=SHUTDOWN_TIMEOUT)
            if pending:
                logger.warning("Notification tasks did not stop in time", pending=len(pending))

    def _retire(self, sched: GroupSchedule) -> None:
        sched.retired = True
        if self._schedules.get(sched.key) is sched:
            del self._schedules[sched.key]

        if sched.timer is not None or sched.flushing:
            self._retired.add(sched)
        else:
            sched.state = ScheduleState.IDLE

    def _discard(self, sched: GroupSchedule) -> None:
        sched.retired = True
        if sched.timer is not None:
            sched.timer.cancel()
            sched.timer = None
        sched.deadline = None
        sched.state = ScheduleState.IDLE

        if self._schedules.get(sched.key) is sched:
            del self._schedules[sched.key]
        self._retired.discard(sched)
        self.dispatcher.release_lane(*sched.key)
        logger.debug("Schedule discarded", group_key=sched.group.key, receiver=sched.group.receiver)

    def _arm(self, sched: GroupSchedule, delay: timedelta) -> None:
        if sched.retired:
            return

        deadline = self._clock() + delay
        if sched.timer is not None and not sched.timer.done():
            if sched.deadline is not None and sched.deadline <= deadline:
                return
            sched.timer.cancel()

        sched.deadline = deadline
        task = asyncio.create_task(
            self._run_timer(sched, max(delay.total_seconds(), 0.0)),
            name=f"flush:{sched.group.key}:{sched.group.receiver}",
        )
        sched.timer = task
        sched.tasks.add(task)
        task.add_done_callback(sched.tasks.discard)

    async def _run_timer(self, sched: GroupSchedule, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            return

        if sched.timer is asyncio.current_task():
            sched.timer = None
            sched.deadline = None

        try:
            flushed = await self._flush(sched)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            flushed = True
            logger.error(
                "Error flushing alert group",
                group_key=sched.group.key,
                receiver=sched.group.receiver,
                error=str(e),
            )
        if flushed:
            self._after_flush(sched)

    async def _flush(self, sched: GroupSchedule) -> bool:
        """Flush the group, or ask the running flush to go again.

        Returns:
            False if the flush was coalesced into one already in flight
        """
        if sched.flushing:
            sched.rerun = True
            NOTIFICATIONS_COALESCED_TOTAL.inc()
            logger.debug("Flush coalesced", group_key=sched.group.key, receiver=sched.group.receiver)
            return False

        sched.flushing = True
        try:
            while True:
                sched.rerun = False
                await self._flush_once(sched)
                if not sched.rerun:
                    break
        finally:
            sched.flushing = False
        return True

    async def _flush_once(self, sched: GroupSchedule) -> None:
        group = sched.group
        route = group.route
        receiver_name = group.receiver

        async with self.dispatcher.lane(group.key, receiver_name):
            now = self._clock()
            sched.flushes += 1
            sched.last_flush_at = now

            members = self.store.members(group)
            if not members:
                return

            active = self.store.active(now)
            firing = [
                alert for alert in members
                if alert.is_firing(now) and not sched.inhibitor.is_inhibited(alert, active, now)
            ]
            resolved = [alert for alert in members if alert.is_resolved(now)]
            if not firing and not resolved:
                logger.debug("All alerts in group inhibited", group_key=group.key, receiver=receiver_name)
                return

            firing_fps = frozenset(alert.fingerprint for alert in firing)
            resolved_fps = frozenset(alert.fingerprint for alert in resolved)
            repeat_interval = route.repeat_interval_for(alert.severity for alert in firing)

            pending = [
                notifier for notifier in sched.receiver.notifiers
                if self.notification_log.should_notify(
                    group.key,
                    receiver_name,
                    firing_fps,
                    resolved_fps,
                    repeat_interval,
                    notifier.send_resolved,
                    now,
                    notifier=notifier.name,
                )
            ]

            settled = True
            if pending:
                notification = Notification(
                    group_key=group.key,
                    receiver=receiver_name,
                    group_labels=dict(group.labels),
                    firing=firing,
                    resolved=resolved,
                    created_at=now,
                    external_url=self.external_url,
                )
                sched.state = ScheduleState.SENDING
                result = await self.dispatcher.send(notification, sched.receiver, pending)
                settled = result.settled
                if result.success:
                    sched.sends += 1

            if settled and resolved and self.store.groups.get(group.key) is group:
                # Only drop alerts that did not fire again while we were sending
                current = self._clock()
                still_resolved = [
                    alert.fingerprint for alert in resolved
                    if self.store.get(alert.fingerprint) is None
                    or self.store.get(alert.fingerprint).is_resolved(current)
                ]
                await self.store.prune(group.key, still_resolved)

    def _after_flush(self, sched: GroupSchedule) -> None:
        if sched.retired:
            self._retired.discard(sched)
            sched.state = ScheduleState.IDLE
            return

        group = self.store.groups.get(sched.group.key)
        if group is not sched.group or not group.fingerprints:
            self._discard(sched)
            return

        now = self._clock()
        if any(alert.is_firing(now) for alert in self.store.members(group)):
            sched.state = ScheduleState.WAITING
        else:
            # Resolved alerts whose notification did not get through
            sched.state = ScheduleState.RESOLVED_PENDING
        self._arm(sched, group.route.group_interval)
