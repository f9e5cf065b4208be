import asyncio
import enum
import logging
import threading
from contextlib import contextmanager, nullcontext
from datetime import datetime
from decimal import Decimal
from typing import Awaitable, Callable, Iterable, List, TypeVar
from sqlalchemy import or_, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
from auth.database import SessionLocal, utcnow
from auth.core.enums import SessionStatus, PaymentStatus, ChangeType, ActivityType
from auth.models.user import Profile
from realtime.feed import ChangeFeed, ChangeEvent, feed as default_feed
from .models import ParkingSpace, Vehicle, ParkingSession, Payment, AdminActivity, UserActivity

logger = logging.getLogger(__name__)

T = TypeVar("T")

class StoreError(Exception):
    pass

class StoreTimeoutError(StoreError):
    pass

class SessionDecoupleError(StoreError):
    pass

async def with_timeout(awaitable: Awaitable[T], seconds: float, operation: str) -> T:
    """Stop waiting after `seconds`; a write already issued is not rolled back."""
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError:
        raise StoreTimeoutError(f"{operation} timed out after {seconds}s")

def row_to_dict(row) -> dict | None:
    if row is None:
        return None
    out = {}
    for col in row.__table__.columns:
        value = getattr(row, col.name)
        if isinstance(value, enum.Enum):
            value = value.value
        out[col.name] = value
    return out

def _shares_one_connection(session_factory: sessionmaker) -> bool:
    bind = session_factory.kw.get("bind")
    return bind is not None and isinstance(bind.pool, StaticPool)

class ParkingStore:
    """Query/write boundary over the persistent store.

    Every call runs in its own short-lived session on a worker thread and
    commits on its own; there are no multi-table transactions. The event loop
    only awaits the thread, so a timeout stops the wait without stopping the
    query. Committed writes are announced on the change feed as row-level
    INSERT/UPDATE/DELETE events, published back on the loop.
    """

    def __init__(self, session_factory: sessionmaker = SessionLocal, change_feed: ChangeFeed | None = default_feed):
        self._session_factory = session_factory
        self._feed = change_feed
        # an in-memory SQLite engine hands every session the same connection
        self._lock = threading.Lock() if _shares_one_connection(session_factory) else None

    @property
    def feed(self) -> ChangeFeed | None:
        return self._feed

    @contextmanager
    def _session(self, operation: str):
        db: Session = self._session_factory()
        try:
            yield db
        except SQLAlchemyError as e:
            db.rollback()
            raise StoreError(f"{operation} failed: {e}") from e
        finally:
            db.close()

    def _call(self, operation: str, work: Callable[[Session], T]) -> T:
        with self._lock or nullcontext():
            with self._session(operation) as db:
                return work(db)

    async def _run(self, operation: str, work: Callable[[Session], T]) -> T:
        return await asyncio.to_thread(self._call, operation, work)

    def _publish(self, table: str, change: ChangeType, new: dict | None = None, old: dict | None = None):
        if self._feed is not None:
            self._feed.publish(ChangeEvent(table=table, type=change, new=new, old=old))

    # --- parking spaces ---
    async def list_spaces(self) -> List[dict]:
        def work(db):
            rows = db.query(ParkingSpace).order_by(ParkingSpace.created_at.desc()).all()
            return [row_to_dict(r) for r in rows]
        return await self._run("list spaces", work)

    async def get_space(self, space_id: str) -> dict | None:
        return await self._run(
            "get space",
            lambda db: row_to_dict(db.query(ParkingSpace).filter(ParkingSpace.id == space_id).first()),
        )

    async def count_spaces_with_prefix(self, prefix: str) -> int:
        return await self._run(
            "count spaces",
            lambda db: db.query(ParkingSpace).filter(ParkingSpace.space_number.like(f"{prefix}-%")).count(),
        )

    async def space_number_exists(self, space_number: str) -> bool:
        return await self._run(
            "check space number",
            lambda db: db.query(ParkingSpace.id).filter(ParkingSpace.space_number == space_number).first() is not None,
        )

    async def create_space(self, values: dict) -> dict:
        def work(db):
            space = ParkingSpace(**values)
            db.add(space)
            db.commit()
            db.refresh(space)
            return row_to_dict(space)
        created = await self._run("create space", work)
        self._publish("parking_spaces", ChangeType.INSERT, new=created)
        return created

    async def update_space(self, space_id: str, values: dict) -> dict | None:
        def work(db):
            space = db.query(ParkingSpace).filter(ParkingSpace.id == space_id).first()
            if not space:
                return None
            old = row_to_dict(space)
            for key, value in values.items():
                setattr(space, key, value)
            db.commit()
            db.refresh(space)
            return old, row_to_dict(space)
        result = await self._run("update space", work)
        if result is None:
            return None
        old, updated = result
        self._publish("parking_spaces", ChangeType.UPDATE, new=updated, old=old)
        return updated

    async def delete_space(self, space_id: str) -> bool:
        def work(db):
            space = db.query(ParkingSpace).filter(ParkingSpace.id == space_id).first()
            if not space:
                return None
            old = row_to_dict(space)
            db.delete(space)
            db.commit()
            return old
        old = await self._run("delete space", work)
        if old is None:
            return False
        self._publish("parking_spaces", ChangeType.DELETE, old=old)
        return True

    # --- vehicles / profiles ---
    async def get_vehicle(self, vehicle_id: str) -> dict | None:
        return await self._run(
            "get vehicle",
            lambda db: row_to_dict(db.query(Vehicle).filter(Vehicle.id == vehicle_id).first()),
        )

    async def get_profile(self, profile_id: str) -> dict | None:
        return await self._run(
            "get profile",
            lambda db: row_to_dict(db.query(Profile).filter(Profile.id == profile_id).first()),
        )

    # --- parking sessions ---
    async def get_session(self, session_id: str) -> dict | None:
        return await self._run(
            "get session",
            lambda db: row_to_dict(db.query(ParkingSession).filter(ParkingSession.id == session_id).first()),
        )

    async def find_session_ids_by_space(self, space_id: str) -> List[str]:
        def work(db):
            rows = db.query(ParkingSession.id).filter(ParkingSession.space_id == space_id).all()
            return [r[0] for r in rows]
        return await self._run("find sessions by space", work)

    async def find_active_session(self, space_id: str) -> dict | None:
        def work(db):
            row = (
                db.query(ParkingSession)
                .filter(ParkingSession.space_id == space_id, ParkingSession.status == SessionStatus.CHECKED_IN)
                .order_by(ParkingSession.start_time.desc())
                .first()
            )
            return row_to_dict(row)
        return await self._run("find active session", work)

    async def detach_sessions(self, session_ids: Iterable[str]) -> int:
        ids = list(session_ids)
        if not ids:
            return 0

        def work(db):
            rows = db.query(ParkingSession).filter(ParkingSession.id.in_(ids)).all()
            changes = []
            for r in rows:
                changes.append(row_to_dict(r))
                r.space_id = None
            db.commit()
            return list(zip(changes, [row_to_dict(r) for r in rows]))

        pairs = await self._run("detach sessions", work)
        for old, new in pairs:
            self._publish("parking_sessions", ChangeType.UPDATE, new=new, old=old)
        return len(pairs)

    async def set_session_status(self, session_id: str, status: SessionStatus, end_time: datetime | None = None) -> bool:
        """Privileged status transition; False when the session does not exist."""
        values = {"status": status}
        if end_time is not None:
            values["end_time"] = end_time
        return await self._update_session(session_id, values, "set session status")

    async def set_session_times(self, session_id: str, start_time: datetime | None = None, end_time: datetime | None = None) -> bool:
        """Privileged start/end timestamp update; False when the session does not exist."""
        values = {}
        if start_time is not None:
            values["start_time"] = start_time
        if end_time is not None:
            values["end_time"] = end_time
        return await self._update_session(session_id, values, "set session times")

    async def _update_session(self, session_id: str, values: dict, operation: str) -> bool:
        def work(db):
            row = db.query(ParkingSession).filter(ParkingSession.id == session_id).first()
            if not row:
                return None
            old = row_to_dict(row)
            for key, value in values.items():
                setattr(row, key, value)
            db.commit()
            db.refresh(row)
            return old, row_to_dict(row)
        result = await self._run(operation, work)
        if result is None:
            return False
        old, new = result
        self._publish("parking_sessions", ChangeType.UPDATE, new=new, old=old)
        return True

    # --- activity logs ---
    async def _insert(self, operation: str, table: str, make_row: Callable[[], object]) -> dict:
        def work(db):
            row = make_row()
            db.add(row)
            db.commit()
            db.refresh(row)
            return row_to_dict(row)
        created = await self._run(operation, work)
        self._publish(table, ChangeType.INSERT, new=created)
        return created

    async def insert_admin_activity(self, admin_id: str | None, action: str, details: str | None) -> dict:
        return await self._insert(
            "insert admin activity", "admin_activities",
            lambda: AdminActivity(admin_id=admin_id, action=action, details=details),
        )

    async def insert_user_activity(self, values: dict) -> dict:
        return await self._insert("insert user activity", "user_activities", lambda: UserActivity(**values))

    async def find_user_activities_for_space(self, space_id: str, session_ids: Iterable[str] = ()) -> List[dict]:
        """Activities pointing at the space directly or through one of its sessions, deduplicated by id."""
        ids = list(session_ids)

        def work(db):
            cond = UserActivity.space_id == space_id
            if ids:
                cond = or_(cond, UserActivity.session_id.in_(ids))
            rows = db.query(UserActivity).filter(cond).order_by(UserActivity.created_at.asc()).all()
            seen = set()
            out = []
            for r in rows:
                if r.id in seen:
                    continue
                seen.add(r.id)
                out.append(row_to_dict(r))
            return out

        return await self._run("find space activities", work)

    async def update_user_activity_details(self, activity_id: str, details: str) -> bool:
        def work(db):
            row = db.query(UserActivity).filter(UserActivity.id == activity_id).first()
            if not row:
                return None
            old = row_to_dict(row)
            row.details = details
            db.commit()
            db.refresh(row)
            return old, row_to_dict(row)
        result = await self._run("update activity details", work)
        if result is None:
            return False
        old, new = result
        self._publish("user_activities", ChangeType.UPDATE, new=new, old=old)
        return True

    async def recent_user_activities(self, limit: int, activity_type: ActivityType | None = ActivityType.BOOKING) -> List[dict]:
        def work(db):
            q = db.query(UserActivity)
            if activity_type is not None:
                q = q.filter(UserActivity.type == activity_type.value)
            return [row_to_dict(r) for r in q.order_by(UserActivity.created_at.desc()).limit(limit).all()]
        return await self._run("recent user activities", work)

    async def recent_admin_activities(self, limit: int) -> List[dict]:
        def work(db):
            rows = db.query(AdminActivity).order_by(AdminActivity.created_at.desc()).limit(limit).all()
            return [row_to_dict(r) for r in rows]
        return await self._run("recent admin activities", work)

    # --- payments ---
    async def recent_payments(self, limit: int) -> List[dict]:
        def work(db):
            rows = db.query(Payment).order_by(Payment.created_at.desc()).limit(limit).all()
            return [row_to_dict(r) for r in rows]
        return await self._run("recent payments", work)

    async def sum_completed_payments(self, start: datetime | None = None, end: datetime | None = None) -> Decimal:
        def work(db):
            q = db.query(func.coalesce(func.sum(Payment.amount), 0)).filter(Payment.status == PaymentStatus.COMPLETED)
            if start is not None:
                q = q.filter(Payment.created_at >= start)
            if end is not None:
                q = q.filter(Payment.created_at <= end)
            return q.scalar()
        total = await self._run("sum payments", work)
        return Decimal(str(total or 0))

    async def find_completed_payment(self, session_id: str, user_id: str) -> dict | None:
        def work(db):
            row = db.query(Payment).filter(
                Payment.session_id == session_id,
                Payment.user_id == user_id,
                Payment.status == PaymentStatus.COMPLETED,
            ).first()
            return row_to_dict(row)
        return await self._run("find completed payment", work)

    async def insert_payment(self, values: dict) -> dict:
        def make_row():
            row = Payment(**values)
            if row.created_at is None:
                row.created_at = utcnow()
            return row
        return await self._insert("insert payment", "payments", make_row)

def get_store() -> ParkingStore:
    return ParkingStore(SessionLocal, default_feed)
