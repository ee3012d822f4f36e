"""Services built on top of the task collection."""

from .notifications import (
    DesktopNotificationSink,
    LogNotificationSink,
    NotificationChannel,
    NotificationEvent,
    NotificationScheduler,
    NotificationSettings,
    NotificationSink,
)

__all__ = [
    "DesktopNotificationSink",
    "LogNotificationSink",
    "NotificationChannel",
    "NotificationEvent",
    "NotificationScheduler",
    "NotificationSettings",
    "NotificationSink",
]
