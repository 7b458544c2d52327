"""Notification feed state and the polling loop that keeps it fresh."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from dataclasses import replace
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, List, Optional

from .api_client import SucolAPIError
from .models import Notification

logger = logging.getLogger("sucol.notifications")

DEFAULT_POLL_INTERVAL = 10.0

PAYMENT_KEYWORD = "Payment"


def is_unread(value: Any) -> bool:
    """Loose ``== 0`` check; the API reports read state as 0/1, "0"/"1" or booleans."""

    if value is None:
        return False
    if isinstance(value, bool):
        return value is False
    if isinstance(value, (int, float)):
        return value == 0
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return True
        try:
            return float(text) == 0
        except ValueError:
            return False
    return False


def unread_count(notifications: Iterable[Notification]) -> int:
    return sum(1 for notification in notifications if is_unread(notification.is_read))


def resident_feed(notifications: Iterable[Notification], user_id: int) -> List[Notification]:
    """Broadcasts plus the resident's own messages, newest first."""

    visible = [
        notification
        for notification in notifications
        if notification.user_id is None or notification.user_id == user_id
    ]
    return sorted(visible, key=lambda item: item.created_at or datetime.min, reverse=True)


def pending_payment_alerts(
    notifications: Iterable[Notification], user_id: int
) -> List[Notification]:
    """Unread admin notifications that flag a payment from *user_id*."""

    return [
        notification
        for notification in notifications
        if notification.user_id == user_id
        and is_unread(notification.is_read)
        and PAYMENT_KEYWORD in notification.title
    ]


def has_pending_payment(notifications: Iterable[Notification], user_id: int) -> bool:
    return bool(pending_payment_alerts(notifications, user_id))


class NotificationFeed:
    """Local copy of a notification list.

    Each refresh replaces the list wholesale; marking one entry read only
    touches that entry.
    """

    def __init__(self, items: Optional[Iterable[Notification]] = None) -> None:
        self._items: List[Notification] = list(items or [])

    @property
    def items(self) -> List[Notification]:
        return list(self._items)

    @property
    def unread_count(self) -> int:
        return unread_count(self._items)

    def replace(self, items: Iterable[Notification]) -> None:
        self._items = list(items)

    def mark_read(self, notification_id: int) -> bool:
        changed = False
        updated: List[Notification] = []
        for item in self._items:
            if item.id == notification_id and is_unread(item.is_read):
                item = replace(item, is_read=1)
                changed = True
            updated.append(item)
        self._items = updated
        return changed


async def mark_read(
    feed: NotificationFeed,
    notification_id: int,
    mark: Callable[[int], Awaitable[Any]],
) -> bool:
    """Mark a notification read remotely, then flip it locally without waiting for a poll.

    Returns ``False`` when the API call fails; the local entry is left unread.
    """

    try:
        await mark(notification_id)
    except SucolAPIError:
        logger.exception("Failed to mark notification %s as read", notification_id)
        return False
    feed.mark_read(notification_id)
    return True


class NotificationPoller:
    """Refresh a :class:`NotificationFeed` on a fixed interval.

    The loop fetches immediately on start. ``stop`` cancels the task, which
    also abandons a fetch that is still in flight.
    """

    def __init__(
        self,
        fetch: Callable[[], Awaitable[List[Notification]]],
        feed: Optional[NotificationFeed] = None,
        *,
        interval: float = DEFAULT_POLL_INTERVAL,
        on_refresh: Optional[Callable[[NotificationFeed], None]] = None,
    ) -> None:
        if interval <= 0:
            raise ValueError("Polling interval must be positive")
        self._fetch = fetch
        self.feed = feed or NotificationFeed()
        self._interval = interval
        self._on_refresh = on_refresh
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def refresh(self) -> bool:
        try:
            items = await self._fetch()
        except SucolAPIError:
            logger.exception("Failed to refresh notifications")
            return False
        self.feed.replace(items)
        if self._on_refresh is not None:
            self._on_refresh(self.feed)
        return True

    async def _run(self) -> None:
        while True:
            try:
                await self.refresh()
            except Exception:
                logger.exception("Unexpected error while refreshing notifications")
            await asyncio.sleep(self._interval)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task

    async def __aenter__(self) -> "NotificationPoller":
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()


__all__ = [
    "DEFAULT_POLL_INTERVAL",
    "NotificationFeed",
    "NotificationPoller",
    "has_pending_payment",
    "is_unread",
    "mark_read",
    "pending_payment_alerts",
    "resident_feed",
    "unread_count",
]
