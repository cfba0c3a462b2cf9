from __future__ import annotations

from sandbox_relay.notifications.backends import NotificationBackends, ntfy_url
from sandbox_relay.notifications.events import notify_event, send_notification, trigger_events

__all__ = ["NotificationBackends", "notify_event", "ntfy_url", "send_notification", "trigger_events"]
