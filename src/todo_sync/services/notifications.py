"""Reminder notifications for the task collection.

A :class:`NotificationScheduler` looks at the collection on a timer and
emits three kinds of reminders: aged items, high priority items and a
daily digest. Each channel is rate limited through a last-sent instant
kept in the durable store, can be snoozed for a particular set of
records, and channels firing in the same tick are batched.
"""

import asyncio
import logging
import re
import shutil
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, tzinfo
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from ..storage import (
    LAST_AGED_ITEMS_NOTIFICATION_KEY,
    LAST_DAILY_DIGEST_KEY,
    LAST_HIGH_PRIORITY_NOTIFICATION_KEY,
    NOTIFICATION_SETTINGS_KEY,
    KeyValueStore,
)
from ..todo import TaskRecord, TodoId
from ..utils.datetime import MS_PER_DAY, MS_PER_HOUR, MS_PER_MINUTE, datetime_to_ms, ms_to_datetime, now_ms


logger = logging.getLogger(__name__)

# Age thresholds
OLD_THRESHOLD_MS = 7 * MS_PER_DAY
VERY_OLD_THRESHOLD_MS = 30 * MS_PER_DAY
URGENT_THRESHOLD_MS = MS_PER_DAY
IMPORTANT_THRESHOLD_MS = 3 * MS_PER_DAY

DIGEST_WINDOW_MS = 30 * MS_PER_MINUTE
BATCH_THRESHOLD = 3
MAX_DIGEST_ACTIONS = 3
BATCHED_TAG = "batched_notifications"

_DIGEST_TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


class NotificationChannel(Enum):
    """Reminder channels; the value doubles as the event tag."""
    AGED = "aged_items"
    PRIORITY = "high_priority"
    DIGEST = "daily_digest"

    @property
    def tag(self) -> str:
        return self.value


# Minimum time between two notifications on the same channel
RENOTIFY_INTERVALS = {
    NotificationChannel.AGED: 24 * MS_PER_HOUR,
    NotificationChannel.PRIORITY: 4 * MS_PER_HOUR,
    NotificationChannel.DIGEST: 24 * MS_PER_HOUR,
}

SNOOZE_DURATIONS = {
    NotificationChannel.AGED: 24 * MS_PER_HOUR,
    NotificationChannel.PRIORITY: 2 * MS_PER_HOUR,
    NotificationChannel.DIGEST: 24 * MS_PER_HOUR,
}

LAST_SENT_KEYS = {
    NotificationChannel.AGED: LAST_AGED_ITEMS_NOTIFICATION_KEY,
    NotificationChannel.PRIORITY: LAST_HIGH_PRIORITY_NOTIFICATION_KEY,
    NotificationChannel.DIGEST: LAST_DAILY_DIGEST_KEY,
}

# Order in which channels are delivered within one tick
CHANNEL_ORDER = (NotificationChannel.PRIORITY, NotificationChannel.AGED, NotificationChannel.DIGEST)


class NotificationSettings(BaseModel):
    """User preferences for reminders, stored as camelCase JSON."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    enabled: bool = True
    aged_items_enabled: bool = True
    high_priority_enabled: bool = True
    daily_digest_enabled: bool = True
    digest_time: str = "09:00"
    snoozes: Dict[str, int] = {}

    @field_validator("digest_time")
    @classmethod
    def validate_digest_time(cls, v):
        if not _DIGEST_TIME_PATTERN.match(v):
            raise ValueError("Digest time must be HH:MM")
        return v

    def channel_enabled(self, channel: NotificationChannel) -> bool:
        if not self.enabled:
            return False
        return {
            NotificationChannel.AGED: self.aged_items_enabled,
            NotificationChannel.PRIORITY: self.high_priority_enabled,
            NotificationChannel.DIGEST: self.daily_digest_enabled,
        }[channel]

    def digest_hour_minute(self) -> Tuple[int, int]:
        hours, minutes = self.digest_time.split(":")
        return int(hours), int(minutes)


def load_notification_settings(store: KeyValueStore) -> NotificationSettings:
    """Read settings from the store, falling back to defaults."""
    raw = store.get(NOTIFICATION_SETTINGS_KEY)
    if not raw:
        return NotificationSettings()
    try:
        return NotificationSettings.model_validate_json(raw)
    except ValidationError as e:
        logger.warning(f"Ignoring invalid notification settings: {e}")
        return NotificationSettings()


def save_notification_settings(store: KeyValueStore, settings: NotificationSettings) -> None:
    store.set(NOTIFICATION_SETTINGS_KEY, settings.model_dump_json(by_alias=True))


# Detection

@dataclass
class FlaggedItem:
    """A record picked up by a detector, with its age."""
    record: TaskRecord
    age_ms: int

    @property
    def days_old(self) -> int:
        return self.age_ms // MS_PER_DAY

    @property
    def id(self) -> TodoId:
        return self.record.id


@dataclass
class AgedItems:
    old: List[FlaggedItem] = field(default_factory=list)
    very_old: List[FlaggedItem] = field(default_factory=list)

    @property
    def all(self) -> List[FlaggedItem]:
        return self.very_old + self.old


@dataclass
class PriorityItems:
    urgent: List[FlaggedItem] = field(default_factory=list)
    important: List[FlaggedItem] = field(default_factory=list)

    @property
    def all(self) -> List[FlaggedItem]:
        return self.urgent + self.important


@dataclass
class DailySummary:
    total_tasks: int = 0
    completed_total: int = 0
    completed_today: int = 0
    pending: int = 0
    overdue: int = 0
    high_priority: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "totalTasks": self.total_tasks,
            "completedTotal": self.completed_total,
            "completedToday": self.completed_today,
            "pending": self.pending,
            "overdue": self.overdue,
            "highPriority": self.high_priority,
        }


def record_age(record: TaskRecord, now: int) -> int:
    """Milliseconds since the record was last touched."""
    reference = record.last_modified or record.timestamp or now
    return now - reference


def _pending(records: Iterable[TaskRecord]) -> List[TaskRecord]:
    return [r for r in records if not r.deleted and not r.completed]


def find_aged_items(records: Iterable[TaskRecord], now: int) -> AgedItems:
    """Pending records untouched for more than a week (or a month)."""
    result = AgedItems()
    for record in _pending(records):
        age = record_age(record, now)
        if age > VERY_OLD_THRESHOLD_MS:
            result.very_old.append(FlaggedItem(record, age))
        elif age > OLD_THRESHOLD_MS:
            result.old.append(FlaggedItem(record, age))
    logger.debug(f"Aged items: {len(result.old)} old, {len(result.very_old)} very old")
    return result


def find_high_priority_items(records: Iterable[TaskRecord], now: int) -> PriorityItems:
    """Priority 5 records older than a day and priority 4 older than three days.

    Each list is sorted oldest first.
    """
    result = PriorityItems()
    for record in _pending(records):
        age = record_age(record, now)
        if record.priority == 5 and age > URGENT_THRESHOLD_MS:
            result.urgent.append(FlaggedItem(record, age))
        elif record.priority == 4 and age > IMPORTANT_THRESHOLD_MS:
            result.important.append(FlaggedItem(record, age))
    result.urgent.sort(key=lambda item: item.age_ms, reverse=True)
    result.important.sort(key=lambda item: item.age_ms, reverse=True)
    logger.debug(f"High priority items: {len(result.urgent)} urgent, {len(result.important)} important")
    return result


def _start_of_day_ms(now: int, tz: Optional[tzinfo]) -> int:
    local = ms_to_datetime(now, tz)
    return datetime_to_ms(local.replace(hour=0, minute=0, second=0, microsecond=0))


def build_daily_summary(records: Iterable[TaskRecord], now: int, tz: Optional[tzinfo] = None) -> DailySummary:
    """Counts for the daily digest. ``tz`` defaults to the local zone."""
    today_start = _start_of_day_ms(now, tz)
    summary = DailySummary()
    for record in records:
        if record.deleted:
            continue
        summary.total_tasks += 1
        if record.completed:
            summary.completed_total += 1
            if (record.last_modified or record.timestamp or 0) >= today_start:
                summary.completed_today += 1
            continue
        summary.pending += 1
        if record_age(record, now) > OLD_THRESHOLD_MS:
            summary.overdue += 1
        if record.priority >= 4:
            summary.high_priority += 1
    return summary


# Events

@dataclass
class NotificationAction:
    action: str
    title: str
    icon: Optional[str] = None

    def to_dict(self) -> Dict[str, str]:
        data = {"action": self.action, "title": self.title}
        if self.icon:
            data["icon"] = self.icon
        return data


@dataclass
class NotificationEvent:
    """A user-visible notification handed to a sink."""
    title: str
    body: str
    tag: str
    data: Dict[str, Any] = field(default_factory=dict)
    actions: List[NotificationAction] = field(default_factory=list)

    @property
    def todo_ids(self) -> List[TodoId]:
        return list(self.data.get("todoIds", []))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "body": self.body,
            "tag": self.tag,
            "data": self.data,
            "actions": [a.to_dict() for a in self.actions],
        }


def _plural(count: int, word: str) -> str:
    return f"{count} {word}{'s' if count != 1 else ''}"


def build_aged_event(aged: AgedItems) -> NotificationEvent:
    items = aged.all
    count = len(items)
    oldest = max(items, key=lambda item: item.age_ms)

    actions = []
    if count == 1:
        actions.append(NotificationAction("complete", "Mark Complete", "/icons/check.png"))
    actions.append(NotificationAction("view", "View Task" if count == 1 else "View Tasks", "/icons/view.png"))
    actions.append(NotificationAction("snooze", "Snooze 1 Day", "/icons/snooze.png"))

    if count == 1:
        body = f'"{oldest.record.text}" has been pending for {oldest.days_old} days'
    else:
        body = f"You have {count} tasks overdue, oldest is {oldest.days_old} days old"

    return NotificationEvent(
        title=_plural(count, "Overdue Task"),
        body=body,
        tag=NotificationChannel.AGED.tag,
        data={
            "type": NotificationChannel.AGED.tag,
            "count": count,
            "todoIds": [item.id for item in items],
            "oldestDays": oldest.days_old,
            "singleTodo": oldest.record.to_dict() if count == 1 else None,
        },
        actions=actions,
    )


def build_priority_event(items: PriorityItems) -> NotificationEvent:
    flagged = items.all
    count = len(flagged)

    if items.urgent:
        body = (f'"{items.urgent[0].record.text}" needs immediate attention' if len(items.urgent) == 1
                else f"{len(items.urgent)} urgent tasks need immediate attention")
    else:
        body = (f'"{items.important[0].record.text}" is high priority' if len(items.important) == 1
                else f"{len(items.important)} important tasks await your attention")

    actions = []
    if count == 1:
        actions.append(NotificationAction("complete", "Mark Complete", "/icons/check.png"))
    actions.append(NotificationAction("view", "View Task" if count == 1 else "View Tasks", "/icons/view.png"))
    if items.urgent:
        actions.append(NotificationAction("snooze", "Snooze 2 Hours", "/icons/snooze.png"))

    return NotificationEvent(
        title=_plural(count, "High Priority Task"),
        body=body,
        tag=NotificationChannel.PRIORITY.tag,
        data={
            "type": NotificationChannel.PRIORITY.tag,
            "count": count,
            "todoIds": [item.id for item in flagged],
            "urgentCount": len(items.urgent),
            "importantCount": len(items.important),
            "singleTodo": flagged[0].record.to_dict() if count == 1 else None,
        },
        actions=actions,
    )


def build_digest_event(summary: DailySummary) -> NotificationEvent:
    body = f"{summary.total_tasks} total tasks"
    if summary.completed_today:
        body += f", {summary.completed_today} completed today"
    if summary.overdue:
        body += f", {summary.overdue} overdue"
    if summary.high_priority:
        body += f", {summary.high_priority} high priority"

    actions = [NotificationAction("view", "Open App", "/icons/view.png")]
    if summary.overdue:
        actions.append(NotificationAction("view_overdue", "View Overdue", "/icons/overdue.png"))
    if summary.high_priority:
        actions.append(NotificationAction("view_priority", "View Priority", "/icons/priority.png"))

    return NotificationEvent(
        title="Daily Task Summary",
        body=body,
        tag=NotificationChannel.DIGEST.tag,
        data={"type": NotificationChannel.DIGEST.tag, "todoIds": [], "summary": summary.to_dict()},
        actions=actions[:MAX_DIGEST_ACTIONS],
    )


@dataclass
class PendingNotification:
    channel: NotificationChannel
    event: NotificationEvent


_BATCH_DESCRIPTIONS = {
    NotificationChannel.PRIORITY: "high priority tasks",
    NotificationChannel.AGED: "overdue items",
    NotificationChannel.DIGEST: "daily summary",
}


def build_batched_event(pending: List[PendingNotification]) -> NotificationEvent:
    """One event standing in for several channels."""
    channels = [p.channel for p in pending]
    parts = [_BATCH_DESCRIPTIONS[c] for c in CHANNEL_ORDER if c in channels]
    todo_ids: List[TodoId] = []
    for p in pending:
        todo_ids.extend(p.event.todo_ids)

    return NotificationEvent(
        title="Multiple Updates",
        body="You have several task notifications: " + ", ".join(parts),
        tag=BATCHED_TAG,
        data={
            "type": "batched",
            "types": [c.tag for c in channels],
            "todoIds": todo_ids,
            "notifications": len(pending),
        },
        actions=[
            NotificationAction("view", "Open App", "/icons/view.png"),
            NotificationAction("dismiss", "Dismiss", "/icons/dismiss.png"),
        ],
    )


FILTER_AGED = "aged"
FILTER_HIGH_PRIORITY = "high-priority"
QUICK_FILTERS = (FILTER_AGED, FILTER_HIGH_PRIORITY)


def apply_quick_filter(records: Iterable[TaskRecord], name: str, now: int) -> List[TaskRecord]:
    """Records a deep-link filter shows, in the order its detector reports them."""
    if name == FILTER_AGED:
        return [item.record for item in find_aged_items(records, now).all]
    if name == FILTER_HIGH_PRIORITY:
        return [item.record for item in find_high_priority_items(records, now).all]
    raise ValueError(f"Unknown filter: {name}")


def filter_for_action(action: str, data: Optional[Dict[str, Any]] = None) -> str:
    """Deep link opened for a notification action."""
    event_type = (data or {}).get("type")
    if action == "view_overdue" or (action == "view" and event_type == NotificationChannel.AGED.tag):
        return f"/?filter={FILTER_AGED}"
    if action == "view_priority" or (action == "view" and event_type == NotificationChannel.PRIORITY.tag):
        return f"/?filter={FILTER_HIGH_PRIORITY}"
    return "/"


def snooze_key(channel: NotificationChannel, ids: Optional[Iterable[TodoId]] = None) -> str:
    if channel is NotificationChannel.DIGEST:
        return channel.tag
    return f"{channel.tag}:{','.join(sorted(str(i) for i in ids or []))}"


@dataclass
class ActionResult:
    """What the caller should do after a notification action."""
    action: str
    url: Optional[str] = None
    complete_ids: List[TodoId] = field(default_factory=list)
    snoozed_until: Optional[int] = None


@dataclass
class TickResult:
    sent: List[NotificationChannel] = field(default_factory=list)
    batched: bool = False
    errors: List[str] = field(default_factory=list)


# Sinks

class NotificationSink(ABC):
    """Abstract base class for notification delivery."""

    @abstractmethod
    async def deliver(self, event: NotificationEvent) -> bool:
        """Show a notification. Returns True if successful."""
        pass

    @abstractmethod
    def is_available(self) -> bool:
        """Check if this sink can deliver on the current system."""
        pass


class LogNotificationSink(NotificationSink):
    """Writes notifications to the log; keeps what it delivered."""

    def __init__(self, level: int = logging.INFO):
        self.level = level
        self.delivered: List[NotificationEvent] = []

    def is_available(self) -> bool:
        return True

    async def deliver(self, event: NotificationEvent) -> bool:
        logger.log(self.level, f"{event.title}: {event.body}")
        self.delivered.append(event)
        return True


class DesktopNotificationSink(NotificationSink):
    """Desktop notification delivery using native OS notifications."""

    def __init__(self, app_name: str = "todo-sync", timeout: float = 10.0):
        self.platform = sys.platform.lower()
        self.app_name = app_name
        self.timeout = timeout

    def is_available(self) -> bool:
        if self.platform == "darwin":
            return shutil.which("osascript") is not None
        if self.platform.startswith("win"):
            return False
        return shutil.which("notify-send") is not None

    def _command(self, event: NotificationEvent) -> List[str]:
        if self.platform == "darwin":
            # Pass title and body as arguments to avoid AppleScript quoting
            return [
                "osascript",
                "-e", "on run argv",
                "-e", "display notification (item 2 of argv) with title (item 1 of argv)",
                "-e", "end run",
                event.title,
                event.body,
            ]
        urgency = "critical" if event.tag == NotificationChannel.PRIORITY.tag else "normal"
        return ["notify-send", "--urgency", urgency, "--app-name", self.app_name, event.title, event.body]

    async def deliver(self, event: NotificationEvent) -> bool:
        if not self.is_available():
            logger.debug(f"Desktop notifications unavailable on {self.platform}")
            return False

        process = await asyncio.create_subprocess_exec(
            *self._command(event),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            _, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            logger.warning("Desktop notification timed out")
            return False

        if process.returncode != 0:
            logger.warning(f"Desktop notification failed ({process.returncode}): {stderr.decode(errors='replace').strip()}")
            return False
        return True


# Scheduler

class NotificationScheduler:
    """Periodically checks the collection and delivers reminders."""

    def __init__(self, store: KeyValueStore, sink: NotificationSink,
                 get_records: Callable[[], Iterable[TaskRecord]],
                 settings_loader: Optional[Callable[[], NotificationSettings]] = None,
                 clock: Callable[[], int] = now_ms,
                 tz: Optional[tzinfo] = None,
                 interval_minutes: float = 30,
                 batch_spacing_seconds: float = 3.0,
                 initial_delay_seconds: float = 5.0,
                 sleep=asyncio.sleep):
        self.store = store
        self.sink = sink
        self.get_records = get_records
        self.settings_loader = settings_loader or (lambda: load_notification_settings(self.store))
        self.clock = clock
        self.tz = tz
        self.interval_minutes = interval_minutes
        self.batch_spacing_seconds = batch_spacing_seconds
        self.initial_delay_seconds = initial_delay_seconds
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self.logger = logging.getLogger(__name__)

    # Durable state

    def last_sent(self, channel: NotificationChannel) -> int:
        return self.store.get_int(LAST_SENT_KEYS[channel]) or 0

    def _mark_sent(self, channel: NotificationChannel, now: int) -> None:
        self.store.set_int(LAST_SENT_KEYS[channel], now)

    def load_settings(self, now: int) -> NotificationSettings:
        """Load settings, pruning snoozes that have run out."""
        settings = self.settings_loader()
        expired = [key for key, until in settings.snoozes.items() if until <= now]
        if expired:
            for key in expired:
                del settings.snoozes[key]
            save_notification_settings(self.store, settings)
            self.logger.debug(f"Pruned {len(expired)} expired snoozes")
        return settings

    # Gates

    def _interval_elapsed(self, channel: NotificationChannel, now: int) -> bool:
        return now - self.last_sent(channel) > RENOTIFY_INTERVALS[channel]

    def _digest_occurrence(self, instant: int, hours: int, minutes: int) -> datetime:
        """The digest time nearest to ``instant``: yesterday's, today's or tomorrow's."""
        local = ms_to_datetime(instant, self.tz)
        today = local.replace(hour=hours, minute=minutes, second=0, microsecond=0)
        candidates = [today + timedelta(days=offset) for offset in (-1, 0, 1)]
        return min(candidates, key=lambda target: abs(local - target))

    def _in_digest_window(self, settings: NotificationSettings, now: int) -> bool:
        hours, minutes = settings.digest_hour_minute()
        target = self._digest_occurrence(now, hours, minutes)
        if abs(ms_to_datetime(now, self.tz) - target) > timedelta(milliseconds=DIGEST_WINDOW_MS):
            return False
        # One digest per occurrence
        last = self.last_sent(NotificationChannel.DIGEST)
        return not last or self._digest_occurrence(last, hours, minutes) != target

    def _gates_open(self, channel: NotificationChannel, settings: NotificationSettings, now: int) -> bool:
        if not settings.channel_enabled(channel):
            return False
        if not self._interval_elapsed(channel, now):
            return False
        if channel is NotificationChannel.DIGEST:
            return self._in_digest_window(settings, now)
        return True

    def is_snoozed(self, channel: NotificationChannel, ids: Iterable[TodoId],
                   settings: Optional[NotificationSettings] = None, now: Optional[int] = None) -> bool:
        now = self.clock() if now is None else now
        if settings is None:
            settings = self.load_settings(now)
        return settings.snoozes.get(snooze_key(channel, ids), 0) > now

    def should_notify(self, channel: NotificationChannel, now: Optional[int] = None) -> bool:
        """Whether a channel is enabled, past its interval and (for the digest) in its window."""
        now = self.clock() if now is None else now
        return self._gates_open(channel, self.load_settings(now), now)

    # Actions

    def snooze_channel(self, channel: NotificationChannel, ids: Optional[Iterable[TodoId]] = None,
                       now: Optional[int] = None) -> int:
        """Suppress a channel for one set of records. Returns the end instant."""
        now = self.clock() if now is None else now
        settings = self.load_settings(now)
        until = now + SNOOZE_DURATIONS[channel]
        settings.snoozes[snooze_key(channel, ids)] = until
        save_notification_settings(self.store, settings)
        self.logger.info(f"Snoozed {channel.tag} until {until}")
        return until

    def handle_action(self, action: str, data: Optional[Dict[str, Any]] = None) -> ActionResult:
        """Interpret a notification action chosen by the user."""
        data = data or {}
        ids = list(data.get("todoIds") or [])
        self.logger.info(f"Notification action {action!r} on {data.get('type')!r} ({len(ids)} tasks)")

        if action == "snooze":
            try:
                channel = NotificationChannel(data.get("type"))
            except ValueError:
                self.logger.warning(f"Cannot snooze notification of type {data.get('type')!r}")
                return ActionResult(action)
            return ActionResult(action, snoozed_until=self.snooze_channel(channel, ids))
        if action == "complete":
            return ActionResult(action, complete_ids=ids)
        if action == "dismiss":
            return ActionResult(action)
        return ActionResult(action, url=filter_for_action(action, data))

    # Tick

    def collect(self, records: List[TaskRecord], settings: NotificationSettings, now: int) -> List[PendingNotification]:
        """Events due this tick, in delivery order."""
        pending = []

        priority = find_high_priority_items(records, now)
        if (priority.all and self._gates_open(NotificationChannel.PRIORITY, settings, now)
                and not self.is_snoozed(NotificationChannel.PRIORITY, [i.id for i in priority.all], settings, now)):
            pending.append(PendingNotification(NotificationChannel.PRIORITY, build_priority_event(priority)))

        aged = find_aged_items(records, now)
        if (aged.all and self._gates_open(NotificationChannel.AGED, settings, now)
                and not self.is_snoozed(NotificationChannel.AGED, [i.id for i in aged.all], settings, now)):
            pending.append(PendingNotification(NotificationChannel.AGED, build_aged_event(aged)))

        if (self._gates_open(NotificationChannel.DIGEST, settings, now)
                and not self.is_snoozed(NotificationChannel.DIGEST, [], settings, now)):
            summary = build_daily_summary(records, now, self.tz)
            pending.append(PendingNotification(NotificationChannel.DIGEST, build_digest_event(summary)))

        return pending

    async def _deliver(self, event: NotificationEvent) -> bool:
        try:
            return bool(await self.sink.deliver(event))
        except Exception:
            self.logger.exception(f"Notification sink failed for {event.tag}")
            return False

    async def check_and_notify(self, now: Optional[int] = None) -> TickResult:
        """Run one check. Never raises; failures are retried next tick."""
        result = TickResult()
        try:
            now = self.clock() if now is None else now
            records = [r for r in self.get_records() if not r.deleted]
            settings = self.load_settings(now)
            pending = self.collect(records, settings, now)
            if not pending:
                return result

            if len(pending) >= BATCH_THRESHOLD:
                result.batched = True
                if await self._deliver(build_batched_event(pending)):
                    for p in pending:
                        self._mark_sent(p.channel, now)
                        result.sent.append(p.channel)
                    self.logger.info(f"Batched notification sent for {[p.channel.tag for p in pending]}")
                return result

            for index, p in enumerate(pending):
                if index:
                    await self._sleep(self.batch_spacing_seconds)
                if await self._deliver(p.event):
                    self._mark_sent(p.channel, now)
                    result.sent.append(p.channel)
                    self.logger.info(f"{p.channel.tag} notification sent ({len(p.event.todo_ids)} tasks)")
        except Exception as e:
            self.logger.exception("Notification check failed")
            result.errors.append(str(e))
        return result

    # Monitoring

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run(self) -> None:
        await self._sleep(self.initial_delay_seconds)
        while True:
            await self.check_and_notify()
            await self._sleep(self.interval_minutes * 60)

    def start(self) -> asyncio.Task:
        """Begin periodic checks on the running event loop."""
        if self.running:
            return self._task
        self.logger.info(f"Starting notification monitoring every {self.interval_minutes} minutes")
        self._task = asyncio.ensure_future(self._run())
        return self._task

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        self.logger.debug("Notification monitoring stopped")
