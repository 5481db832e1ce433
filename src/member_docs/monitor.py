"""member_docs.monitor

Overdue Monitor.

A member is overdue when more than OVERDUE_AFTER_DAYS whole days have passed
since registration and the mandatory checklist is still incomplete.  The
scan raises at most one warning notification per calendar day; the marker
phrase in the message is what identifies an earlier warning on the same day.

OverdueMonitor debounces scans: every collection load re-arms a short
timer and only the latest snapshot is scanned once it expires, so a burst
of reloads during an import produces a single scan.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Callable, Iterable, Sequence

from member_docs.models import Member, Notification, NotificationLog, is_compliant
from member_docs.normalize import utc_now

log = logging.getLogger(__name__)

OVERDUE_AFTER_DAYS = 30
OVERDUE_MARKER = "documents overdue"
DEFAULT_DEBOUNCE_SECONDS = 2.0


def elapsed_days(registered: datetime, now: datetime) -> int:
    return (now - registered).days


def find_overdue(members: Iterable[Member], now: datetime | None = None) -> list[Member]:
    now = now or utc_now()
    return [
        m for m in members
        if elapsed_days(m.registration_date, now) > OVERDUE_AFTER_DAYS and not is_compliant(m)
    ]


def already_warned_today(notifications: Iterable[Notification], now: datetime) -> bool:
    today = now.date()
    return any(
        n.type == "warning"
        and OVERDUE_MARKER in n.message
        and n.timestamp.astimezone(now.tzinfo).date() == today
        for n in notifications
    )


def check_overdue(
    members: Sequence[Member],
    notifications: NotificationLog,
    now: datetime | None = None,
) -> Notification | None:
    """Scan once; return the warning that was recorded, or None."""
    now = now or utc_now()
    overdue = find_overdue(members, now)
    if not overdue:
        return None
    if already_warned_today(notifications, now):
        log.debug("Overdue warning already recorded today; %d members overdue", len(overdue))
        return None
    log.info("%d members overdue", len(overdue))
    return notifications.add(
        "warning",
        f"{len(overdue)} members have {OVERDUE_MARKER}: "
        f"mandatory documents still missing more than {OVERDUE_AFTER_DAYS} days after registration",
        now=now,
    )


class OverdueMonitor:
    def __init__(
        self,
        delay_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.delay_seconds = delay_seconds
        self._clock = clock
        self._pending: tuple[Member, ...] | None = None
        self._deadline: float | None = None

    @property
    def armed(self) -> bool:
        return self._deadline is not None

    def collection_loaded(self, members: Iterable[Member]) -> None:
        self._pending = tuple(members)
        self._deadline = self._clock() + self.delay_seconds

    def poll(self, notifications: NotificationLog, now: datetime | None = None) -> Notification | None:
        """Run the scan if the debounce window has passed."""
        if self._deadline is None or self._clock() < self._deadline:
            return None
        return self.flush(notifications, now)

    def flush(self, notifications: NotificationLog, now: datetime | None = None) -> Notification | None:
        """Run the pending scan immediately, ignoring the debounce window."""
        if self._pending is None:
            return None
        members = self._pending
        self._pending = None
        self._deadline = None
        return check_overdue(members, notifications, now)
