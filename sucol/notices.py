"""Deactivation notice dispatch for overdue residents."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, List, Optional

from .api_client import SucolAPIError
from .models import DeactivationNotice

logger = logging.getLogger("sucol.notices")

SendNotice = Callable[..., Awaitable[Any]]


class DispatchInProgressError(RuntimeError):
    """Raised when a bulk dispatch is requested while another one is running."""


@dataclass
class DispatchReport:
    """Outcome of a bulk run. Users are listed in the order they were attempted."""

    sent: List[DeactivationNotice] = field(default_factory=list)
    failed: List[DeactivationNotice] = field(default_factory=list)
    skipped: List[DeactivationNotice] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return len(self.sent) + len(self.failed)


def _succeeded(payload: Any) -> bool:
    if isinstance(payload, dict):
        return bool(payload.get("success", True))
    return True


class NoticeDispatcher:
    """Send deactivation notices one user at a time.

    Notices are never batched: each user's ``notice_sent`` flag flips only
    after that user's own call succeeds, so an interrupted run leaves earlier
    users marked and later ones untouched.
    """

    def __init__(self, send: SendNotice, *, lock: Optional[asyncio.Lock] = None) -> None:
        self._send = send
        self._lock = lock or asyncio.Lock()

    @property
    def sending(self) -> bool:
        return self._lock.locked()

    async def _deliver(self, notice: DeactivationNotice) -> bool:
        billing_date: Optional[object] = notice.raw_billing_date or notice.billing_date
        try:
            payload = await self._send(user_id=notice.user_id, billing_date=billing_date)
        except SucolAPIError:
            logger.exception("Failed to send deactivation notice to user %s", notice.user_id)
            return False
        if not _succeeded(payload):
            logger.warning("Billing API declined the notice for user %s", notice.user_id)
            return False
        notice.notice_sent = True
        logger.info("Deactivation notice sent to user %s", notice.user_id)
        return True

    async def send_one(self, notice: DeactivationNotice) -> bool:
        """Send a notice to a single user; already-notified users are left alone."""

        if notice.notice_sent:
            return False
        return await self._deliver(notice)

    async def send_all(self, notices: Iterable[DeactivationNotice]) -> DispatchReport:
        if self._lock.locked():
            raise DispatchInProgressError("A notice run is already in progress")

        report = DispatchReport()
        async with self._lock:
            for notice in list(notices):
                if notice.notice_sent:
                    report.skipped.append(notice)
                    continue
                if await self._deliver(notice):
                    report.sent.append(notice)
                else:
                    report.failed.append(notice)
        logger.info(
            "Bulk notice run finished: %d sent, %d failed, %d already notified",
            len(report.sent),
            len(report.failed),
            len(report.skipped),
        )
        return report


__all__ = ["DispatchInProgressError", "DispatchReport", "NoticeDispatcher"]
