"""Keeps one admin's dashboard cache in step with the change feed.

``parking_spaces`` events patch the cached space list directly. Events on
the other watched tables re-arm a per-table timer; when it fires, the
matching fetches run once for the whole burst. A fixed-interval poll
backs this up in case notifications are missed.
"""
import asyncio
import inspect
import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from auth.core.config import settings
from auth.core.enums import ActivityFeedName, ChangeType
from auth.database import utcnow
from activity.formatting import display_zone, time_ago
from activity.projector import ActivityProjector
from parking.store import ParkingStore, StoreError, with_timeout
from .feed import ANY_EVENT, ChangeEvent, ChangeFeed, Subscription, feed as default_feed

logger = logging.getLogger(__name__)

WATCHED_TABLES = ("parking_spaces", "parking_sessions", "payments", "admin_activities", "user_activities")

SPACES = "spaces"
ACTIVITY = "activity"
DAILY_REVENUE = "daily_revenue"
TOTAL_EARNINGS = "total_earnings"

class Debouncer:
    """One pending timer per key; scheduling a key again replaces its timer."""

    def __init__(self, loop: asyncio.AbstractEventLoop):
        self._loop = loop
        self._handles: Dict[str, asyncio.TimerHandle] = {}

    def schedule(self, key: str, delay: float, callback: Callable[[], None]):
        self.cancel(key)
        self._handles[key] = self._loop.call_later(delay, self._fire, key, callback)

    def _fire(self, key: str, callback: Callable[[], None]):
        self._handles.pop(key, None)
        callback()

    def cancel(self, key: str):
        handle = self._handles.pop(key, None)
        if handle is not None:
            handle.cancel()

    def cancel_all(self):
        for handle in self._handles.values():
            handle.cancel()
        self._handles.clear()

    def pending(self, key: str | None = None) -> bool:
        if key is None:
            return bool(self._handles)
        return key in self._handles

@dataclass
class DashboardStats:
    total_spaces: int = 0
    occupied_spaces: int = 0
    available_spaces: int = 0
    daily_revenue: int = 0
    total_earnings: Decimal = Decimal("0")

class DashboardCache:
    def __init__(self):
        self.spaces: List[dict] = []
        self.stats = DashboardStats()
        self.version = 0

    def _recount(self):
        occupied = sum(1 for s in self.spaces if s.get("is_occupied"))
        self.stats.total_spaces = len(self.spaces)
        self.stats.occupied_spaces = occupied
        self.stats.available_spaces = len(self.spaces) - occupied
        self.version += 1

    def replace_spaces(self, spaces: List[dict]):
        self.spaces = list(spaces)
        self._recount()

    def apply_space_event(self, event: ChangeEvent) -> bool:
        if event.type == ChangeType.INSERT and event.new:
            rest = [s for s in self.spaces if s.get("id") != event.new.get("id")]
            self.spaces = [event.new] + rest
        elif event.type == ChangeType.UPDATE and event.new:
            self.spaces = [event.new if s.get("id") == event.new.get("id") else s for s in self.spaces]
        elif event.type == ChangeType.DELETE and event.old:
            self.spaces = [s for s in self.spaces if s.get("id") != event.old.get("id")]
        else:
            return False
        self._recount()
        return True

    def set_daily_revenue(self, value: int):
        if self.stats.daily_revenue != value:
            self.stats.daily_revenue = value
            self.version += 1

    def set_total_earnings(self, value: Decimal):
        if self.stats.total_earnings != value:
            self.stats.total_earnings = value
            self.version += 1

    def clear(self):
        self.spaces = []
        self.stats = DashboardStats()
        self.version += 1

def today_bounds(now: datetime | None = None, tz: str | None = None) -> Tuple[datetime, datetime]:
    """Start and end of the current day in the display zone, as UTC datetimes."""
    local = (now or utcnow()).astimezone(display_zone(tz))
    start = local.replace(hour=0, minute=0, second=0, microsecond=0)
    end = start + timedelta(days=1) - timedelta(microseconds=1)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)

def whole_units(amount: Decimal) -> int:
    return int(Decimal(amount).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

UpdateCallback = Callable[[dict], Optional[Awaitable[None]]]

class RealtimeSyncController:
    def __init__(
        self,
        store: ParkingStore,
        admin_id: str,
        change_feed: ChangeFeed | None = None,
        projector: ActivityProjector | None = None,
        on_update: UpdateCallback | None = None,
        poll_interval: float = settings.POLL_INTERVAL_SECONDS,
        read_timeout: float = settings.READ_TIMEOUT_SECONDS,
        earnings_timeout: float = settings.EARNINGS_TIMEOUT_SECONDS,
    ):
        self.store = store
        self.admin_id = admin_id
        self.feed = change_feed or store.feed or default_feed
        self.projector = projector or ActivityProjector(store)
        self.on_update = on_update
        self.poll_interval = poll_interval
        self.read_timeout = read_timeout
        self.earnings_timeout = earnings_timeout
        self.refresh_plan: Dict[str, Tuple[float, Tuple[str, ...]]] = {
            "parking_sessions": (settings.SESSION_DEBOUNCE_SECONDS, (SPACES, ACTIVITY, DAILY_REVENUE)),
            "payments": (settings.PAYMENT_DEBOUNCE_SECONDS, (DAILY_REVENUE, ACTIVITY, TOTAL_EARNINGS)),
            "admin_activities": (settings.ACTIVITY_DEBOUNCE_SECONDS, (ACTIVITY,)),
            "user_activities": (settings.ACTIVITY_DEBOUNCE_SECONDS, (ACTIVITY,)),
        }
        self.cache = DashboardCache()
        self.session_start: datetime | None = None
        self.authenticated = False
        self.visible = True
        self.debouncer: Debouncer | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._subscriptions: List[Subscription] = []
        self._poll_task: asyncio.Task | None = None
        self._tasks: set = set()
        self._published: Tuple[int, int] | None = None

    @property
    def active(self) -> bool:
        return self.authenticated and self.session_start is not None

    @property
    def subscribed(self) -> bool:
        return bool(self._subscriptions)

    def _should_subscribe(self) -> bool:
        return self.active and self.visible

    # --- lifecycle ---
    def _bind_loop(self):
        loop = asyncio.get_running_loop()
        if loop is not self._loop:
            self._unsubscribe()
            self._loop = loop
            self.debouncer = Debouncer(loop)

    async def start(self, session_start: datetime | None = None, visible: bool | None = None):
        self._bind_loop()
        self.session_start = session_start or utcnow()
        self.authenticated = True
        if visible is not None:
            self.visible = visible
        self.projector.reset()
        logger.info("Admin session %s started at %s", self.admin_id, self.session_start.isoformat())
        await self.refresh_all()
        self._sync_subscription()

    async def stop(self):
        """Logout: drop the subscription, pending timers, the poll loop and cached data."""
        self.authenticated = False
        self.session_start = None
        self._unsubscribe()
        tasks = [t for t in self._tasks if not t.done()]
        # tasks left on a loop that has since closed cannot be cancelled from here
        if self._loop is not None and not self._loop.is_closed():
            for t in tasks:
                t.cancel()
            if tasks and self._loop is asyncio.get_running_loop():
                await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self.projector.reset()
        self.cache.clear()
        logger.info("Admin session %s stopped", self.admin_id)

    async def set_visible(self, visible: bool):
        self._bind_loop()
        became_visible = visible and not self.visible
        self.visible = visible
        if became_visible and self.active:
            await self.refresh_all()
        self._sync_subscription()

    def _sync_subscription(self):
        if self._should_subscribe() and not self.subscribed:
            self._subscribe()
        elif not self._should_subscribe() and self.subscribed:
            self._unsubscribe()

    def _subscribe(self):
        for table in WATCHED_TABLES:
            self._subscriptions.append(self.feed.subscribe(table, ANY_EVENT, self.handle_event))
        if self._poll_task is None and self._loop is not None:
            self._poll_task = self._loop.create_task(self._poll())
        logger.debug("Admin %s subscribed to %d tables", self.admin_id, len(WATCHED_TABLES))

    def _unsubscribe(self):
        for sub in self._subscriptions:
            sub.unsubscribe()
        self._subscriptions = []
        if self.debouncer is not None:
            self.debouncer.cancel_all()
        if self._poll_task is not None:
            if self._loop is not None and not self._loop.is_closed():
                self._poll_task.cancel()
            self._poll_task = None

    async def _poll(self):
        while True:
            await asyncio.sleep(self.poll_interval)
            if self._should_subscribe():
                await self.refresh_all()

    # --- change events ---
    def handle_event(self, event: ChangeEvent):
        """Feed listener; safe to call from another thread or event loop."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._dispatch(event)
        else:
            loop.call_soon_threadsafe(self._dispatch, event)

    def _dispatch(self, event: ChangeEvent):
        if not self._should_subscribe():
            return
        if event.table == "parking_spaces":
            if self.cache.apply_space_event(event):
                self._notify()
            return
        plan = self.refresh_plan.get(event.table)
        if plan is None or self.debouncer is None:
            return
        delay, jobs = plan
        self.debouncer.schedule(event.table, delay, lambda: self._spawn(self._run(jobs)))

    def request_refresh(self):
        """Fire-and-forget refresh of spaces and activity, e.g. after an admin action."""
        if self._loop is None or self._loop.is_closed() or not self.active:
            return
        self._loop.call_soon_threadsafe(self._spawn, self._run((SPACES, ACTIVITY)))

    def _spawn(self, coro):
        task = self._loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, jobs: Tuple[str, ...]):
        # the session may have ended while the timer was pending
        if not self.active:
            return
        for job in jobs:
            if job == SPACES:
                await self.refresh_spaces()
            elif job == ACTIVITY:
                await self.refresh_activity()
            elif job == DAILY_REVENUE:
                await self.refresh_daily_revenue()
            elif job == TOTAL_EARNINGS:
                await self.refresh_total_earnings()
        if self.active:
            self._notify()

    # --- fetches ---
    async def refresh_spaces(self) -> bool:
        try:
            spaces = await with_timeout(self.store.list_spaces(), self.read_timeout, "Fetch parking spaces")
        except StoreError:
            logger.exception("Error fetching parking spaces")
            return False
        self.cache.replace_spaces(spaces)
        return True

    async def refresh_activity(self) -> bool:
        return await self.projector.refresh(self.session_start)

    async def refresh_daily_revenue(self):
        start, end = today_bounds()
        try:
            total = await with_timeout(self.store.sum_completed_payments(start, end), self.read_timeout, "Fetch today revenue")
        except StoreError:
            logger.warning("Could not fetch today's revenue, showing 0", exc_info=True)
            self.cache.set_daily_revenue(0)
            return
        self.cache.set_daily_revenue(whole_units(total))

    async def refresh_total_earnings(self):
        try:
            total = await with_timeout(self.store.sum_completed_payments(), self.earnings_timeout, "Fetch total earnings")
        except StoreError:
            logger.warning("Could not fetch total earnings, keeping previous value", exc_info=True)
            return
        self.cache.set_total_earnings(total)

    async def refresh_all(self):
        if not self.active:
            return
        await self.refresh_spaces()
        await self.refresh_activity()
        await self.refresh_daily_revenue()
        await self.refresh_total_earnings()
        self._notify()

    # --- read side ---
    def stats(self) -> dict:
        out = asdict(self.cache.stats)
        out["total_earnings"] = str(self.cache.stats.total_earnings)
        return out

    def activity_list(self, name: ActivityFeedName, view_all: bool = False, now: datetime | None = None) -> List[dict]:
        records = self.projector.all[name] if view_all else self.projector.recent[name]
        out = []
        for r in records:
            item = r.to_dict()
            item["time_ago"] = time_ago(r.time, now=now)
            out.append(item)
        return out

    def snapshot(self, now: datetime | None = None) -> dict:
        return {
            "session_start": self.session_start,
            "stats": self.stats(),
            "recent": {n.value: self.activity_list(n, now=now) for n in ActivityFeedName},
        }

    def _notify(self):
        marker = (self.cache.version, self.projector.version)
        if marker == self._published or self.on_update is None:
            self._published = marker
            return
        self._published = marker
        try:
            result = self.on_update({"type": "dashboard_updated", "payload": self.stats()})
        except Exception:
            logger.warning("Dashboard update callback failed", exc_info=True)
            return
        if inspect.isawaitable(result) and self._loop is not None:
            self._spawn(result)
