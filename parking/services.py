# services.py
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional

from auth.core.config import settings
from auth.core.enums import ScanMode, SessionStatus
from auth.database import utcnow
from activity.details import parse_details, with_space_identity
from .store import ParkingStore, StoreError, SessionDecoupleError, with_timeout

logger = logging.getLogger(__name__)

SESSION_ID_KEYS = ("sid", "sessionId", "id", "session_id")

MISSING_SCAN_INPUT = "Please enter a QR code and select a parking space."
CHECK_IN_FAILED = "Failed to check in vehicle. Please try again."
CHECK_OUT_FAILED = "Failed to check out vehicle. Please try again."
NO_ACTIVE_SESSION = "No active session found for this space."
INCONSISTENT_SPACE = "Data Inconsistency Detected"

class SpaceCreationError(Exception):
    pass

@dataclass(frozen=True)
class ScanPayload:
    session_id: Optional[str] = None
    vehicle_id: Optional[str] = None
    space_id: Optional[str] = None
    raw: str = ""

def _text(value) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)

def parse_scan_payload(raw) -> ScanPayload:
    """QR text is either a JSON object or an opaque session id."""
    text = (raw or "").strip()
    if not text:
        return ScanPayload()
    try:
        data = json.loads(text)
    except ValueError:
        return ScanPayload(session_id=text, raw=text)
    if not isinstance(data, dict):
        return ScanPayload(session_id=text, raw=text)
    session_id = next((_text(data[k]) for k in SESSION_ID_KEYS if data.get(k)), None)
    return ScanPayload(
        session_id=session_id,
        vehicle_id=_text(data.get("vehicle_id")),
        space_id=_text(data.get("space_id")),
        raw=text,
    )

@dataclass
class ReconcileResult:
    success: bool
    message: str
    space_id: Optional[str] = None
    session_id: Optional[str] = None
    session_updated: bool = False
    history_preserved: Optional[bool] = None
    space_deleted: bool = False
    sessions_detached: int = 0
    activities_enriched: int = 0

@dataclass
class HistoryOutcome:
    sessions_detached: int = 0
    activities_enriched: int = 0
    space_deleted: bool = False

@dataclass
class SpaceInspection:
    space: Optional[dict] = None
    session: Optional[dict] = None
    profile: Optional[dict] = None
    vehicle: Optional[dict] = None
    owner_label: str = "Unknown"
    inconsistent: bool = False
    message: Optional[str] = None
    error: Optional[str] = None

def capitalize(text: str) -> str:
    return text[:1].upper() + text[1:]

def space_prefix(section: str) -> str:
    words = (section or "").split()
    return words[-1][0].upper() if words else "X"

def next_space_number(prefix: str, existing_count: int) -> str:
    return f"{prefix}-{existing_count + 1:02d}"

async def enrich_activity_details(store: ParkingStore, activities: List[dict], space_number: str, section: Optional[str]) -> int:
    """Copy space identity into activity details that lack a space number.

    Rows that already carry one are left alone, so running this twice
    gives the same result as running it once.
    """
    enriched = 0
    for row in activities:
        merged = with_space_identity(parse_details(row.get("details")), space_number, section)
        if merged is None:
            continue
        try:
            await store.update_user_activity_details(row["id"], merged.dumps())
            enriched += 1
        except StoreError:
            logger.warning("Could not preserve space info on activity %s", row.get("id"), exc_info=True)
    return enriched

class SessionReconciler:
    def __init__(
        self,
        store: ParkingStore,
        admin_id: Optional[str] = None,
        on_changed: Optional[Callable[[], None]] = None,
        read_timeout: float = settings.READ_TIMEOUT_SECONDS,
    ):
        self.store = store
        self.admin_id = admin_id
        self.on_changed = on_changed
        self.read_timeout = read_timeout

    def _changed(self):
        if self.on_changed is not None:
            self.on_changed()

    async def _read(self, awaitable, operation: str):
        """Best-effort read: None on failure or timeout."""
        try:
            return await with_timeout(awaitable, self.read_timeout, operation)
        except StoreError:
            logger.warning("%s failed", operation, exc_info=True)
            return None

    async def _log_admin(self, action: str, details: str):
        try:
            await self.store.insert_admin_activity(self.admin_id, action, details)
        except StoreError:
            logger.warning("Could not log admin activity %s", action, exc_info=True)

    async def _transition_session(self, session_id: Optional[str], new_status: SessionStatus, end_time: Optional[datetime] = None) -> bool:
        if not session_id:
            logger.warning("No session id in scan payload, skipping session status update")
            return False
        try:
            updated = await self.store.set_session_status(session_id, new_status, end_time=end_time)
        except StoreError:
            logger.warning("Could not update session %s to %s", session_id, new_status.value, exc_info=True)
            return False
        if not updated:
            logger.warning("Session %s not found, status not updated", session_id)
        else:
            logger.info("Session %s -> %s", session_id, new_status.value)
        return updated

    async def _vehicle_type(self, vehicle_id: Optional[str]) -> str:
        if not vehicle_id:
            return "vehicle"
        vehicle = await self._read(self.store.get_vehicle(vehicle_id), "Fetch vehicle")
        return (vehicle or {}).get("vehicle_type") or "vehicle"

    async def _space_number(self, space_id: str) -> str:
        space = await self._read(self.store.get_space(space_id), "Fetch space")
        number = (space or {}).get("space_number")
        return str(number) if number else "unknown space"

    async def resolve_space_id(self, payload: ScanPayload, space_id: Optional[str] = None) -> Optional[str]:
        if space_id:
            return space_id
        if payload.space_id:
            return payload.space_id
        if payload.session_id:
            session = await self._read(self.store.get_session(payload.session_id), "Fetch session")
            if session:
                return session.get("space_id")
        return None

    async def scan(self, mode: ScanMode, raw_payload: str, space_id: Optional[str] = None) -> ReconcileResult:
        payload = parse_scan_payload(raw_payload)
        if not payload.raw:
            return ReconcileResult(False, MISSING_SCAN_INPUT)
        target = await self.resolve_space_id(payload, space_id)
        if not target:
            return ReconcileResult(False, MISSING_SCAN_INPUT, session_id=payload.session_id)
        if mode == ScanMode.CHECK_IN:
            return await self.check_in(target, payload)
        return await self.check_out(target, payload)

    async def check_in(self, space_id: str, payload) -> ReconcileResult:
        if not isinstance(payload, ScanPayload):
            payload = parse_scan_payload(payload)
        try:
            space = await self.store.update_space(space_id, {
                "is_occupied": True,
                "occupied_since": utcnow(),
                "vehicle_id": payload.vehicle_id,
            })
        except StoreError:
            logger.exception("Error during check-in of space %s", space_id)
            return ReconcileResult(False, CHECK_IN_FAILED, space_id=space_id, session_id=payload.session_id)
        if space is None:
            logger.error("Check-in failed, space %s not found", space_id)
            return ReconcileResult(False, CHECK_IN_FAILED, space_id=space_id, session_id=payload.session_id)

        session_updated = await self._transition_session(payload.session_id, SessionStatus.CHECKED_IN)
        vehicle_type = await self._vehicle_type(payload.vehicle_id)
        space_number = await self._space_number(space_id)
        await self._log_admin("check_in", f"Checked in {capitalize(vehicle_type)} {space_number}")
        self._changed()
        return ReconcileResult(
            True,
            "Vehicle checked in successfully.",
            space_id=space_id,
            session_id=payload.session_id,
            session_updated=session_updated,
        )

    async def check_out(self, space_id: str, payload) -> ReconcileResult:
        if not isinstance(payload, ScanPayload):
            payload = parse_scan_payload(payload)
        # read before clearing: the vehicle id is gone afterwards
        before = await self._read(self.store.get_space(space_id), "Fetch space")
        try:
            space = await self.store.update_space(space_id, {
                "is_occupied": False,
                "vehicle_id": None,
                "occupied_since": None,
            })
        except StoreError:
            logger.exception("Error during check-out of space %s", space_id)
            return ReconcileResult(False, CHECK_OUT_FAILED, space_id=space_id, session_id=payload.session_id)
        if space is None:
            logger.error("Check-out failed, space %s not found", space_id)
            return ReconcileResult(False, CHECK_OUT_FAILED, space_id=space_id, session_id=payload.session_id)

        session_updated = await self._transition_session(payload.session_id, SessionStatus.COMPLETED, end_time=utcnow())
        vehicle_type = await self._vehicle_type(payload.vehicle_id or (before or {}).get("vehicle_id"))
        space_number = await self._space_number(space_id)
        await self._log_admin("check_out", f"Checked out {capitalize(vehicle_type)} {space_number}")

        result = ReconcileResult(
            True,
            "Vehicle checked out successfully.",
            space_id=space_id,
            session_id=payload.session_id,
            session_updated=session_updated,
        )
        try:
            outcome = await self.preserve_history_and_delete(space_id)
        except SessionDecoupleError:
            logger.error("Sessions could not be unlinked from space %s, space kept", space_id, exc_info=True)
            result.history_preserved = False
        else:
            result.history_preserved = True
            result.space_deleted = outcome.space_deleted
            result.sessions_detached = outcome.sessions_detached
            result.activities_enriched = outcome.activities_enriched
        self._changed()
        return result

    async def preserve_history_and_delete(self, space_id: str) -> HistoryOutcome:
        """Detach sessions, copy space identity into activities, then delete the space.

        Raises SessionDecoupleError when sessions cannot be found or detached;
        the space is not deleted in that case. A failed delete is only logged.
        """
        outcome = HistoryOutcome()
        try:
            session_ids = await self.store.find_session_ids_by_space(space_id)
            outcome.sessions_detached = await self.store.detach_sessions(session_ids)
        except StoreError as e:
            raise SessionDecoupleError(f"could not unlink sessions from space {space_id}") from e
        logger.info("Unlinked %d sessions from space %s", outcome.sessions_detached, space_id)

        space = await self._read(self.store.get_space(space_id), "Fetch space before delete")
        if space and space.get("space_number"):
            activities = await self._read(
                self.store.find_user_activities_for_space(space_id, session_ids),
                "Fetch space activities",
            )
            if activities:
                outcome.activities_enriched = await enrich_activity_details(
                    self.store, activities, str(space["space_number"]), space.get("section"),
                )

        try:
            outcome.space_deleted = await self.store.delete_space(space_id)
        except StoreError:
            logger.error("Could not delete space %s after checkout", space_id, exc_info=True)
        return outcome

    async def delete_space(self, space_id: str) -> ReconcileResult:
        space_number = await self._space_number(space_id)
        try:
            outcome = await self.preserve_history_and_delete(space_id)
        except SessionDecoupleError:
            logger.error("Refusing to delete space %s, sessions still linked", space_id, exc_info=True)
            return ReconcileResult(
                False,
                "Could not unlink sessions from this space. The space was not deleted.",
                space_id=space_id,
                history_preserved=False,
            )
        if not outcome.space_deleted:
            return ReconcileResult(
                False,
                "Failed to delete parking space. Please try again.",
                space_id=space_id,
                history_preserved=True,
                sessions_detached=outcome.sessions_detached,
                activities_enriched=outcome.activities_enriched,
            )
        await self._log_admin("delete_space", f"Deleted parking space {space_number}")
        self._changed()
        return ReconcileResult(
            True,
            "Parking space deleted.",
            space_id=space_id,
            history_preserved=True,
            space_deleted=True,
            sessions_detached=outcome.sessions_detached,
            activities_enriched=outcome.activities_enriched,
        )

    async def inspect_space(self, space_id: str) -> SpaceInspection:
        try:
            space = await with_timeout(self.store.get_space(space_id), self.read_timeout, "Fetch space")
            session = await with_timeout(self.store.find_active_session(space_id), self.read_timeout, "Fetch active session")
        except StoreError:
            logger.exception("Error fetching session details for space %s", space_id)
            return SpaceInspection(error="Failed to load session details. Please try again.")
        if space is None:
            return SpaceInspection()
        if session is None:
            inconsistent = bool(space.get("is_occupied"))
            return SpaceInspection(
                space=space,
                inconsistent=inconsistent,
                message=INCONSISTENT_SPACE if inconsistent else NO_ACTIVE_SESSION,
            )
        inspection = SpaceInspection(space=space, session=session)
        if session.get("user_id"):
            inspection.profile = await self._read(self.store.get_profile(session["user_id"]), "Fetch profile")
            name = (inspection.profile or {}).get("name")
            inspection.owner_label = name or str(session["user_id"])[:8]
        if session.get("vehicle_id"):
            inspection.vehicle = await self._read(self.store.get_vehicle(session["vehicle_id"]), "Fetch vehicle")
        return inspection

    async def repair_occupancy(self, space_id: str) -> ReconcileResult:
        """Clear the occupied flag only; sessions and history are not touched."""
        try:
            space = await self.store.update_space(space_id, {"is_occupied": False})
        except StoreError:
            logger.exception("Could not repair occupancy of space %s", space_id)
            return ReconcileResult(False, "Failed to update parking space. Please try again.", space_id=space_id)
        if space is None:
            return ReconcileResult(False, "Parking space not found.", space_id=space_id)
        logger.info("Space %s marked available by manual repair", space_id)
        self._changed()
        return ReconcileResult(True, "Parking space marked as available.", space_id=space_id)

    async def end_session(self, space_id: str, end_time: Optional[datetime] = None) -> ReconcileResult:
        try:
            session = await with_timeout(self.store.find_active_session(space_id), self.read_timeout, "Fetch active session")
            if session is None:
                return ReconcileResult(False, NO_ACTIVE_SESSION, space_id=space_id)
            if not await self.store.set_session_times(session["id"], end_time=end_time or utcnow()):
                return ReconcileResult(False, CHECK_OUT_FAILED, space_id=space_id, session_id=session["id"])
            if await self.store.update_space(space_id, {"is_occupied": False}) is None:
                return ReconcileResult(False, CHECK_OUT_FAILED, space_id=space_id, session_id=session["id"])
        except StoreError:
            logger.exception("Error ending session on space %s", space_id)
            return ReconcileResult(False, CHECK_OUT_FAILED, space_id=space_id)
        self._changed()
        return ReconcileResult(
            True,
            "Vehicle checked out successfully!",
            space_id=space_id,
            session_id=session["id"],
            session_updated=True,
        )

    async def create_space(self, section: str, category: str, address: str, daily_rate: Decimal, space_number: Optional[str] = None) -> dict:
        if daily_rate is None or Decimal(daily_rate) <= 0:
            raise SpaceCreationError("Daily rate must be a valid positive number")
        if not space_number:
            prefix = space_prefix(section)
            space_number = next_space_number(prefix, await self.store.count_spaces_with_prefix(prefix))
        if await self.store.space_number_exists(space_number):
            raise SpaceCreationError(f"Space {space_number} already exists.")
        space = await self.store.create_space({
            "space_number": space_number,
            "section": section,
            "category": category,
            "address": address,
            "daily_rate": Decimal(daily_rate),
            "is_occupied": False,
        })
        await self._log_admin(
            "add_space",
            f"Added new parking space {space_number} ({category}) in {section} at {address}",
        )
        self._changed()
        return space
