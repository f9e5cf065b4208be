"""Recent-activity read model for the admin dashboard.

Three raw sources (booking rows from ``user_activities``, ``payments`` and
``admin_activities``) are formatted into :class:`ActivityRecord` lists,
sorted newest first and, for bookings and admin actions, reordered so that
whatever happened during the current admin session comes first. The
projector keeps a "recent" top-N slice and the full "view all" list for
each feed.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Sequence

from auth.core.config import settings
from auth.core.enums import ActivityFeedName, ActivityType
from parking.store import ParkingStore, with_timeout
from .formatting import ActivityRecord, as_utc, format_admin_activity, format_payment, format_user_activity

logger = logging.getLogger(__name__)

RECENT_LIMIT = 4
BOOKING_FETCH_LIMIT = 25
PAYMENT_FETCH_LIMIT = 10
ADMIN_FETCH_LIMIT = 25

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)

def _sort_key(record: ActivityRecord):
    return record.time or _EPOCH

def newest_first(records: Sequence[ActivityRecord]) -> List[ActivityRecord]:
    return sorted(records, key=_sort_key, reverse=True)

def prioritize_session(records: Sequence[ActivityRecord], session_start: datetime | None) -> List[ActivityRecord]:
    """Records at or after `session_start` ahead of older ones, each part newest first.

    Nothing is dropped; without a session start the list is only sorted.
    """
    ordered = newest_first(records)
    start = as_utc(session_start)
    if start is None:
        return ordered
    current = [r for r in ordered if r.time is not None and r.time >= start]
    earlier = [r for r in ordered if r.time is None or r.time < start]
    return current + earlier

def same_activities(a: Sequence[ActivityRecord], b: Sequence[ActivityRecord]) -> bool:
    if len(a) != len(b):
        return False
    return all(x.id == y.id and x.time == y.time for x, y in zip(a, b))

@dataclass
class Projection:
    payments: List[ActivityRecord] = field(default_factory=list)
    bookings: List[ActivityRecord] = field(default_factory=list)
    admin: List[ActivityRecord] = field(default_factory=list)

    def feed(self, name: ActivityFeedName) -> List[ActivityRecord]:
        return getattr(self, name.value)

    def recent(self, limit: int = RECENT_LIMIT) -> Dict[ActivityFeedName, List[ActivityRecord]]:
        return {name: self.feed(name)[:limit] for name in ActivityFeedName}

def project(booking_rows: Sequence[dict], payment_rows: Sequence[dict], admin_rows: Sequence[dict], session_start: datetime | None) -> Projection:
    bookings = [format_user_activity(r) for r in booking_rows]
    return Projection(
        payments=newest_first([format_payment(r) for r in payment_rows]),
        bookings=prioritize_session(bookings, session_start),
        admin=prioritize_session([format_admin_activity(r) for r in admin_rows], session_start),
    )

class ActivityProjector:
    """Keeps the three activity feeds of one admin dashboard.

    ``refresh`` is throttled to one run per window and is a no-op while a
    previous run is still in flight. A failed fetch clears the recent lists.
    """

    def __init__(
        self,
        store: ParkingStore,
        throttle_seconds: float = settings.ACTIVITY_THROTTLE_SECONDS,
        watchdog_seconds: float = settings.ACTIVITY_WATCHDOG_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.throttle_seconds = throttle_seconds
        self.watchdog_seconds = watchdog_seconds
        self._clock = clock
        self._in_flight = False
        self._last_started: float | None = None
        self.version = 0
        self.recent: Dict[ActivityFeedName, List[ActivityRecord]] = {n: [] for n in ActivityFeedName}
        self.all: Dict[ActivityFeedName, List[ActivityRecord]] = {n: [] for n in ActivityFeedName}

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    async def _fetch(self):
        return await asyncio.gather(
            self.store.recent_user_activities(BOOKING_FETCH_LIMIT, ActivityType.BOOKING),
            self.store.recent_payments(PAYMENT_FETCH_LIMIT),
            self.store.recent_admin_activities(ADMIN_FETCH_LIMIT),
        )

    async def refresh(self, session_start: datetime | None) -> bool:
        """Run one projection cycle; False when skipped or failed."""
        if self._in_flight:
            logger.debug("activity refresh already running, skipped")
            return False
        now = self._clock()
        if self._last_started is not None and now - self._last_started < self.throttle_seconds:
            logger.debug("activity refresh throttled")
            return False
        self._in_flight = True
        self._last_started = now
        try:
            bookings, payments, admin = await with_timeout(self._fetch(), self.watchdog_seconds, "Fetch recent activity")
            projection = project(bookings, payments, admin, session_start)
        except Exception:
            logger.exception("Error fetching recent activity")
            self._clear_recent()
            return False
        finally:
            self._in_flight = False
        self._commit(projection)
        return True

    def _commit(self, projection: Projection):
        changed = False
        for name in ActivityFeedName:
            full = projection.feed(name)
            if not same_activities(self.all[name], full):
                self.all[name] = full
                changed = True
            top = full[:RECENT_LIMIT]
            if not same_activities(self.recent[name], top):
                self.recent[name] = top
                changed = True
        if changed:
            self.version += 1

    def _clear_recent(self):
        if any(self.recent[n] for n in ActivityFeedName):
            self.version += 1
        self.recent = {n: [] for n in ActivityFeedName}

    def reset(self):
        self.recent = {n: [] for n in ActivityFeedName}
        self.all = {n: [] for n in ActivityFeedName}
        self._last_started = None
        self.version += 1
