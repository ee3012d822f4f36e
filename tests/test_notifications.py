"""Tests for reminder detection and the notification scheduler."""

import asyncio
import json
from datetime import timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from pydantic import ValidationError

from conftest import BASE_TIME, make_record
from todo_sync.services.notifications import (
    BATCHED_TAG,
    AgedItems,
    DailySummary,
    FlaggedItem,
    LogNotificationSink,
    NotificationChannel,
    NotificationScheduler,
    NotificationSettings,
    PriorityItems,
    apply_quick_filter,
    build_aged_event,
    build_daily_summary,
    build_digest_event,
    build_priority_event,
    filter_for_action,
    find_aged_items,
    find_high_priority_items,
    load_notification_settings,
    save_notification_settings,
    snooze_key,
)
from todo_sync.storage import (
    LAST_AGED_ITEMS_NOTIFICATION_KEY,
    LAST_DAILY_DIGEST_KEY,
    LAST_HIGH_PRIORITY_NOTIFICATION_KEY,
    NOTIFICATION_SETTINGS_KEY,
)
from todo_sync.utils.datetime import MS_PER_DAY, MS_PER_HOUR


AGED = NotificationChannel.AGED
PRIORITY = NotificationChannel.PRIORITY
DIGEST = NotificationChannel.DIGEST


def days_ago(days):
    return BASE_TIME - days * MS_PER_DAY


@pytest.fixture
def records():
    return [
        make_record("aged", text="Renew passport", timestamp=days_ago(10)),
        make_record("urgent", text="File taxes", priority=5, timestamp=days_ago(2)),
        make_record("fresh", text="Buy milk"),
    ]


@pytest.fixture
def sink():
    return LogNotificationSink()


@pytest.fixture
def sleep():
    return AsyncMock()


@pytest.fixture
def scheduler(store, sink, records, clock, sleep):
    return NotificationScheduler(store, sink, lambda: records, clock=clock, tz=timezone.utc, sleep=sleep)


class TestDetection:
    """Test aged and high priority detection."""

    def test_aged_thresholds(self):
        records = [
            make_record(1, timestamp=days_ago(7)),
            make_record(2, timestamp=days_ago(8)),
            make_record(3, timestamp=days_ago(31)),
            make_record(4, timestamp=days_ago(40), completed=True),
            make_record(5, timestamp=days_ago(40), last_modified=days_ago(1)),
        ]

        aged = find_aged_items(records, BASE_TIME)

        assert [i.id for i in aged.old] == [2]
        assert [i.id for i in aged.very_old] == [3]
        assert [i.id for i in aged.all] == [3, 2]
        assert aged.old[0].days_old == 8

    def test_high_priority_thresholds(self):
        records = [
            make_record(1, priority=5, timestamp=days_ago(2)),
            make_record(2, priority=5, timestamp=days_ago(3)),
            make_record(3, priority=5, timestamp=days_ago(1)),
            make_record(4, priority=4, timestamp=days_ago(2)),
            make_record(5, priority=4, timestamp=days_ago(4)),
            make_record(6, priority=3, timestamp=days_ago(20)),
        ]

        items = find_high_priority_items(records, BASE_TIME)

        assert [i.id for i in items.urgent] == [2, 1]
        assert [i.id for i in items.important] == [5]

    def test_daily_summary(self):
        records = [
            make_record(1, completed=True, last_modified=BASE_TIME - MS_PER_HOUR),
            make_record(2, completed=True, last_modified=days_ago(2)),
            make_record(3, timestamp=days_ago(9), priority=4),
            make_record(4),
            make_record(5, deleted=True),
        ]

        summary = build_daily_summary(records, BASE_TIME, timezone.utc)

        assert summary.to_dict() == {
            "totalTasks": 4,
            "completedTotal": 2,
            "completedToday": 1,
            "pending": 2,
            "overdue": 1,
            "highPriority": 1,
        }


class TestEvents:
    """Test event construction."""

    def test_single_aged_item(self):
        record = make_record("a", text="Renew passport", timestamp=days_ago(10))
        event = build_aged_event(AgedItems(old=[FlaggedItem(record, 10 * MS_PER_DAY)]))

        assert event.title == "1 Overdue Task"
        assert event.body == '"Renew passport" has been pending for 10 days'
        assert event.tag == "aged_items"
        assert [a.action for a in event.actions] == ["complete", "view", "snooze"]
        assert event.data["singleTodo"]["id"] == "a"
        assert event.todo_ids == ["a"]

    def test_several_aged_items(self):
        aged = AgedItems(
            old=[FlaggedItem(make_record(1), 8 * MS_PER_DAY)],
            very_old=[FlaggedItem(make_record(2), 40 * MS_PER_DAY)],
        )
        event = build_aged_event(aged)

        assert event.title == "2 Overdue Tasks"
        assert event.data["oldestDays"] == 40
        assert event.data["singleTodo"] is None
        assert [a.action for a in event.actions] == ["view", "snooze"]

    def test_priority_snooze_only_for_urgent(self):
        important = PriorityItems(important=[FlaggedItem(make_record(1, priority=4), 4 * MS_PER_DAY)])
        urgent = PriorityItems(urgent=[FlaggedItem(make_record(2, priority=5), 2 * MS_PER_DAY)])

        assert [a.action for a in build_priority_event(important).actions] == ["complete", "view"]
        assert [a.title for a in build_priority_event(urgent).actions][-1] == "Snooze 2 Hours"

    def test_digest_actions(self):
        event = build_digest_event(DailySummary(total_tasks=5, overdue=2, high_priority=1))

        assert event.title == "Daily Task Summary"
        assert event.body == "5 total tasks, 2 overdue, 1 high priority"
        assert [a.action for a in event.actions] == ["view", "view_overdue", "view_priority"]
        assert event.todo_ids == []
        assert json.dumps(event.to_dict())

    def test_action_links(self):
        assert filter_for_action("view", {"type": "aged_items"}) == "/?filter=aged"
        assert filter_for_action("view_priority") == "/?filter=high-priority"
        assert filter_for_action("view", {"type": "daily_digest"}) == "/"

    def test_quick_filters_match_action_links(self, records):
        assert [r.id for r in apply_quick_filter(records, "aged", BASE_TIME)] == ["aged"]
        assert [r.id for r in apply_quick_filter(records, "high-priority", BASE_TIME)] == ["urgent"]
        with pytest.raises(ValueError):
            apply_quick_filter(records, "someday", BASE_TIME)

    def test_snooze_keys(self):
        assert snooze_key(AGED, ["b", "a"]) == "aged_items:a,b"
        assert snooze_key(DIGEST, ["a"]) == "daily_digest"


class TestNotificationSettings:
    """Test persisted preferences."""

    def test_camel_case_round_trip(self, store):
        save_notification_settings(store, NotificationSettings(aged_items_enabled=False, digest_time="07:30"))

        stored = json.loads(store.get(NOTIFICATION_SETTINGS_KEY))
        assert stored["agedItemsEnabled"] is False
        assert stored["digestTime"] == "07:30"
        assert load_notification_settings(store).digest_hour_minute() == (7, 30)

    def test_invalid_digest_time(self):
        with pytest.raises(ValidationError):
            NotificationSettings(digest_time="25:00")

    def test_unreadable_settings_fall_back(self, store):
        store.set(NOTIFICATION_SETTINGS_KEY, '{"digestTime": "noon"}')

        assert load_notification_settings(store) == NotificationSettings()


class TestGates:
    """Test rate limiting, enablement and the digest window."""

    def test_renotify_interval(self, scheduler, store):
        store.set_int(LAST_AGED_ITEMS_NOTIFICATION_KEY, BASE_TIME - 2 * MS_PER_HOUR)
        assert scheduler.should_notify(AGED) is False

        store.set_int(LAST_AGED_ITEMS_NOTIFICATION_KEY, BASE_TIME - 25 * MS_PER_HOUR)
        assert scheduler.should_notify(AGED) is True

    def test_priority_interval_is_shorter(self, scheduler, store):
        store.set_int(LAST_HIGH_PRIORITY_NOTIFICATION_KEY, BASE_TIME - 5 * MS_PER_HOUR)

        assert scheduler.should_notify(PRIORITY) is True

    def test_disabled_channels(self, scheduler, store):
        save_notification_settings(store, NotificationSettings(aged_items_enabled=False))
        assert scheduler.should_notify(AGED) is False
        assert scheduler.should_notify(PRIORITY) is True

        save_notification_settings(store, NotificationSettings(enabled=False))
        assert scheduler.should_notify(PRIORITY) is False

    @pytest.mark.parametrize("digest_time,expected", [
        ("12:00", True),
        ("12:20", True),
        ("11:30", True),
        ("12:31", False),
        ("09:00", False),
    ])
    def test_digest_window(self, scheduler, store, digest_time, expected):
        save_notification_settings(store, NotificationSettings(digest_time=digest_time))

        assert scheduler.should_notify(DIGEST) is expected

    def test_digest_once_per_day(self, scheduler, store):
        save_notification_settings(store, NotificationSettings(digest_time="12:00"))
        store.set_int(LAST_DAILY_DIGEST_KEY, days_ago(1) - MS_PER_HOUR)
        assert scheduler.should_notify(DIGEST) is True

        store.set_int(LAST_DAILY_DIGEST_KEY, BASE_TIME - 10 * 60 * 1000)
        assert scheduler.should_notify(DIGEST) is False

    @pytest.mark.parametrize("digest_time,minutes_after_base", [
        ("23:50", 12 * 60 + 10),  # 00:10 the next morning
        ("00:10", 11 * 60 + 50),  # 23:50 the evening before
    ])
    def test_digest_window_crosses_midnight(self, scheduler, store, digest_time, minutes_after_base):
        save_notification_settings(store, NotificationSettings(digest_time=digest_time))
        now = BASE_TIME + minutes_after_base * 60 * 1000

        assert scheduler.should_notify(DIGEST, now=now) is True

        store.set_int(LAST_DAILY_DIGEST_KEY, now - 2 * MS_PER_DAY)
        assert scheduler.should_notify(DIGEST, now=now) is True


class TestSnooze:
    """Test snoozing a channel for a set of records."""

    def test_snooze_suppresses_same_records(self, scheduler, records, clock):
        until = scheduler.snooze_channel(AGED, ["aged"])

        assert until == BASE_TIME + 24 * MS_PER_HOUR
        assert scheduler.is_snoozed(AGED, ["aged"])
        assert not scheduler.is_snoozed(AGED, ["aged", "other"])

        settings = scheduler.load_settings(BASE_TIME)
        channels = [p.channel for p in scheduler.collect(records, settings, BASE_TIME)]
        assert channels == [PRIORITY]

    def test_expired_snoozes_are_pruned(self, scheduler, store, clock):
        scheduler.snooze_channel(PRIORITY, ["urgent"])
        clock.advance(3 * MS_PER_HOUR)

        assert not scheduler.is_snoozed(PRIORITY, ["urgent"])
        assert load_notification_settings(store).snoozes == {}

    def test_handle_actions(self, scheduler, store):
        snoozed = scheduler.handle_action("snooze", {"type": "high_priority", "todoIds": ["urgent"]})
        assert snoozed.snoozed_until == BASE_TIME + 2 * MS_PER_HOUR
        assert "high_priority:urgent" in load_notification_settings(store).snoozes

        assert scheduler.handle_action("complete", {"todoIds": ["a", "b"]}).complete_ids == ["a", "b"]
        assert scheduler.handle_action("view", {"type": "aged_items"}).url == "/?filter=aged"
        assert scheduler.handle_action("dismiss").url is None
        assert scheduler.handle_action("snooze", {"type": "batched"}).snoozed_until is None


class TestCheckAndNotify:
    """Test one scheduler tick."""

    async def test_sends_due_channels_in_order(self, scheduler, sink, store, sleep):
        result = await scheduler.check_and_notify()

        assert result.sent == [PRIORITY, AGED]
        assert not result.batched
        assert [e.title for e in sink.delivered] == ["1 High Priority Task", "1 Overdue Task"]
        sleep.assert_awaited_once_with(3.0)
        assert store.get_int(LAST_HIGH_PRIORITY_NOTIFICATION_KEY) == BASE_TIME
        assert store.get_int(LAST_AGED_ITEMS_NOTIFICATION_KEY) == BASE_TIME
        assert store.get_int(LAST_DAILY_DIGEST_KEY) is None

    async def test_second_tick_is_rate_limited(self, scheduler, sink, clock):
        await scheduler.check_and_notify()
        clock.advance(30 * 60 * 1000)

        result = await scheduler.check_and_notify()

        assert result.sent == []
        assert len(sink.delivered) == 2

    async def test_three_channels_are_batched(self, scheduler, sink, store, sleep):
        save_notification_settings(store, NotificationSettings(digest_time="12:00"))

        result = await scheduler.check_and_notify()

        assert result.batched
        assert result.sent == [PRIORITY, AGED, DIGEST]
        assert len(sink.delivered) == 1
        event = sink.delivered[0]
        assert event.tag == BATCHED_TAG
        assert event.title == "Multiple Updates"
        assert event.data["types"] == ["high_priority", "aged_items", "daily_digest"]
        assert event.data["todoIds"] == ["urgent", "aged"]
        assert [a.action for a in event.actions] == ["view", "dismiss"]
        sleep.assert_not_awaited()
        for key in (LAST_AGED_ITEMS_NOTIFICATION_KEY, LAST_HIGH_PRIORITY_NOTIFICATION_KEY, LAST_DAILY_DIGEST_KEY):
            assert store.get_int(key) == BASE_TIME

    async def test_sink_failure_keeps_channels_due(self, store, records, clock, sleep):
        sink = MagicMock()
        sink.deliver = AsyncMock(side_effect=RuntimeError("no display"))
        scheduler = NotificationScheduler(store, sink, lambda: records, clock=clock, tz=timezone.utc, sleep=sleep)

        result = await scheduler.check_and_notify()

        assert result.sent == []
        assert result.errors == []
        assert store.get_int(LAST_AGED_ITEMS_NOTIFICATION_KEY) is None
        assert scheduler.should_notify(AGED)

    async def test_failed_record_source_is_reported(self, store, sink, clock):
        def broken():
            raise RuntimeError("storage gone")

        scheduler = NotificationScheduler(store, sink, broken, clock=clock)

        result = await scheduler.check_and_notify()

        assert result.errors == ["storage gone"]
        assert sink.delivered == []

    async def test_nothing_due(self, store, sink, clock):
        scheduler = NotificationScheduler(store, sink, lambda: [make_record(1)], clock=clock, tz=timezone.utc)

        result = await scheduler.check_and_notify()

        assert result.sent == []
        assert sink.delivered == []


class TestMonitoring:
    """Test the periodic loop."""

    async def test_start_and_stop(self, store, sink, records, clock):
        scheduler = NotificationScheduler(
            store, sink, lambda: records, clock=clock, tz=timezone.utc,
            interval_minutes=0.001, batch_spacing_seconds=0, initial_delay_seconds=0,
        )

        task = scheduler.start()
        assert scheduler.start() is task
        await asyncio.sleep(0.02)

        assert scheduler.running
        assert len(sink.delivered) == 2

        await scheduler.stop()
        assert not scheduler.running
        assert task.cancelled()
