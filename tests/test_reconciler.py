import asyncio
import json
from decimal import Decimal

import pytest

from auth.core.enums import ScanMode, SessionStatus
from parking.models import AdminActivity, ParkingSession, ParkingSpace, UserActivity
from parking.services import (
    INCONSISTENT_SPACE, MISSING_SCAN_INPUT, NO_ACTIVE_SESSION,
    SessionReconciler, SpaceCreationError, enrich_activity_details, parse_scan_payload,
)
from parking.store import ParkingStore, StoreError
from conftest import (
    TestingSessionLocal, make_payment, make_profile, make_session, make_space,
    make_user_activity, make_vehicle,
)

def run(coro):
    return asyncio.run(coro)

def admin_log(db):
    db.expire_all()
    return [(a.action, a.details) for a in db.query(AdminActivity).order_by(AdminActivity.created_at).all()]

# --- payload parsing ---
def test_parse_scan_payload_json_keys():
    assert parse_scan_payload('{"sid": "S1", "vehicle_id": "V1"}').session_id == "S1"
    assert parse_scan_payload('{"sessionId": "S2"}').session_id == "S2"
    assert parse_scan_payload('{"id": "S3", "space_id": "P1"}').space_id == "P1"
    assert parse_scan_payload('{"session_id": "S4"}').session_id == "S4"
    # first present key wins
    assert parse_scan_payload('{"sid": "", "sessionId": "S5"}').session_id == "S5"

def test_parse_scan_payload_opaque_text():
    assert parse_scan_payload("  S9  ").session_id == "S9"
    assert parse_scan_payload("[1, 2]").session_id == "[1, 2]"
    assert parse_scan_payload('{"vehicle_id": "V1"}').session_id is None
    assert parse_scan_payload("").raw == ""
    assert parse_scan_payload(None).raw == ""

# --- check-in ---
def test_check_in_marks_space_and_session(db_session, store):
    vehicle = make_vehicle(db_session, vehicle_type="sedan")
    space = make_space(db_session)
    session = make_session(db_session, space_id=space.id, vehicle_id=vehicle.id, session_id="S1")
    changed = []
    reconciler = SessionReconciler(store, admin_id="A1", on_changed=lambda: changed.append(1))

    payload = json.dumps({"sid": session.id, "vehicle_id": vehicle.id})
    result = run(reconciler.scan(ScanMode.CHECK_IN, payload, space.id))

    assert result.success is True
    assert result.session_updated is True
    db_session.expire_all()
    space = db_session.query(ParkingSpace).filter(ParkingSpace.id == space.id).first()
    assert space.is_occupied is True
    assert space.vehicle_id == vehicle.id
    assert space.occupied_since is not None
    assert db_session.query(ParkingSession).filter(ParkingSession.id == "S1").first().status == SessionStatus.CHECKED_IN
    assert admin_log(db_session) == [("check_in", "Checked in Sedan SP-07")]
    assert changed == [1]

def test_check_in_without_session_id_still_succeeds(db_session, store):
    space = make_space(db_session)
    result = run(SessionReconciler(store).check_in(space.id, '{"vehicle_id": null}'))
    assert result.success is True
    assert result.session_updated is False
    assert admin_log(db_session) == [("check_in", "Checked in Vehicle SP-07")]

def test_check_in_unknown_space_fails(db_session, store):
    result = run(SessionReconciler(store).check_in("missing", "S1"))
    assert result.success is False
    assert result.message == "Failed to check in vehicle. Please try again."
    assert admin_log(db_session) == []

def test_scan_resolves_space_from_opaque_session_id(db_session, store):
    space = make_space(db_session)
    make_session(db_session, space_id=space.id, session_id="S9")
    result = run(SessionReconciler(store).scan(ScanMode.CHECK_IN, "S9"))
    assert result.success is True
    assert result.space_id == space.id
    assert result.session_id == "S9"

def test_scan_requires_payload_and_space(db_session, store):
    reconciler = SessionReconciler(store)
    assert run(reconciler.scan(ScanMode.CHECK_IN, "   ")).message == MISSING_SCAN_INPUT
    # unknown session and no space selected
    result = run(reconciler.scan(ScanMode.CHECK_OUT, '{"sid": "nope"}'))
    assert result.success is False
    assert result.message == MISSING_SCAN_INPUT

# --- check-out ---
def test_check_out_preserves_history_and_deletes_space(db_session, store):
    vehicle = make_vehicle(db_session, vehicle_type="sedan")
    space = make_space(db_session, occupied=True, vehicle_id=vehicle.id)
    make_session(db_session, space_id=space.id, vehicle_id=vehicle.id, status=SessionStatus.CHECKED_IN, session_id="S1")
    make_session(db_session, space_id=space.id, status=SessionStatus.COMPLETED, session_id="S2")
    by_session = make_user_activity(db_session, details='{"note": "walk-in"}', session_id="S1")
    by_space = make_user_activity(db_session, details=None, space_id=space.id)
    already = make_user_activity(db_session, details='{"space_number": "SP-01"}', session_id="S2")
    unrelated = make_user_activity(db_session, details='{"note": "elsewhere"}', session_id="S77")
    make_payment(db_session, session_id="S1", amount=Decimal("150.00"))
    before = run(store.sum_completed_payments())

    result = run(SessionReconciler(store, admin_id="A1").scan(ScanMode.CHECK_OUT, '{"sid": "S1"}', space.id))

    assert result.success is True
    assert result.history_preserved is True
    assert result.space_deleted is True
    assert result.sessions_detached == 2
    assert result.activities_enriched == 2

    db_session.expire_all()
    assert db_session.query(ParkingSpace).filter(ParkingSpace.id == space.id).first() is None
    s1 = db_session.query(ParkingSession).filter(ParkingSession.id == "S1").first()
    s2 = db_session.query(ParkingSession).filter(ParkingSession.id == "S2").first()
    assert s1.status == SessionStatus.COMPLETED
    assert s1.end_time is not None
    assert s1.space_id is None and s2.space_id is None

    def details(activity):
        return json.loads(db_session.query(UserActivity).filter(UserActivity.id == activity.id).first().details)

    assert details(by_session) == {"note": "walk-in", "space_number": "SP-07", "space_section": "North Wing"}
    assert details(by_space) == {"space_number": "SP-07", "space_section": "North Wing"}
    assert details(already) == {"space_number": "SP-01"}
    assert details(unrelated) == {"note": "elsewhere"}

    # payments are never touched by the cleanup
    assert run(store.sum_completed_payments()) == before
    assert admin_log(db_session) == [("check_out", "Checked out Sedan SP-07")]

def test_enrichment_is_idempotent(db_session, store):
    space = make_space(db_session)
    make_user_activity(db_session, details='{"note": "x"}', space_id=space.id)
    make_user_activity(db_session, details="legacy text", space_id=space.id)

    rows = run(store.find_user_activities_for_space(space.id))
    assert run(enrich_activity_details(store, rows, "SP-07", "North Wing")) == 2
    once = [r["details"] for r in run(store.find_user_activities_for_space(space.id))]

    rows = run(store.find_user_activities_for_space(space.id))
    assert run(enrich_activity_details(store, rows, "SP-07", "North Wing")) == 0
    twice = [r["details"] for r in run(store.find_user_activities_for_space(space.id))]
    assert once == twice

class DetachFailingStore(ParkingStore):
    async def detach_sessions(self, session_ids):
        raise StoreError("detach sessions failed")

class DeleteFailingStore(ParkingStore):
    async def delete_space(self, space_id):
        raise StoreError("delete space failed")

def test_check_out_keeps_space_when_sessions_cannot_be_detached(db_session, change_feed):
    store = DetachFailingStore(TestingSessionLocal, change_feed)
    space = make_space(db_session, occupied=True)
    make_session(db_session, space_id=space.id, status=SessionStatus.CHECKED_IN, session_id="S1")

    result = run(SessionReconciler(store).check_out(space.id, "S1"))

    assert result.success is True
    assert result.history_preserved is False
    assert result.space_deleted is False
    db_session.expire_all()
    kept = db_session.query(ParkingSpace).filter(ParkingSpace.id == space.id).first()
    assert kept is not None and kept.is_occupied is False
    assert db_session.query(ParkingSession).filter(ParkingSession.id == "S1").first().space_id == space.id

def test_delete_space_refused_when_sessions_cannot_be_detached(db_session, change_feed):
    store = DetachFailingStore(TestingSessionLocal, change_feed)
    space = make_space(db_session)
    result = run(SessionReconciler(store).delete_space(space.id))
    assert result.success is False
    assert result.history_preserved is False
    assert run(store.get_space(space.id)) is not None

def test_failed_delete_after_check_out_is_not_fatal(db_session, change_feed):
    store = DeleteFailingStore(TestingSessionLocal, change_feed)
    space = make_space(db_session, occupied=True)
    make_session(db_session, space_id=space.id, status=SessionStatus.CHECKED_IN, session_id="S1")

    result = run(SessionReconciler(store).check_out(space.id, "S1"))

    assert result.success is True
    assert result.history_preserved is True
    assert result.space_deleted is False
    assert result.sessions_detached == 1

# --- inspection and repair ---
def test_occupied_space_without_session_is_flagged(db_session, store):
    space = make_space(db_session, occupied=True)
    inspection = run(SessionReconciler(store).inspect_space(space.id))
    assert inspection.inconsistent is True
    assert inspection.message == INCONSISTENT_SPACE
    assert inspection.session is None

def test_free_space_without_session(db_session, store):
    space = make_space(db_session)
    inspection = run(SessionReconciler(store).inspect_space(space.id))
    assert inspection.inconsistent is False
    assert inspection.message == NO_ACTIVE_SESSION

def test_inspection_with_active_session(db_session, store):
    owner = make_profile(db_session, name="Maria Santos")
    vehicle = make_vehicle(db_session, owner_id=owner.id, plate="NDA 4821")
    space = make_space(db_session, occupied=True, vehicle_id=vehicle.id)
    make_session(db_session, space_id=space.id, user_id=owner.id, vehicle_id=vehicle.id, status=SessionStatus.CHECKED_IN)

    inspection = run(SessionReconciler(store).inspect_space(space.id))
    assert inspection.inconsistent is False
    assert inspection.owner_label == "Maria Santos"
    assert inspection.vehicle["plate"] == "NDA 4821"

def test_inspection_owner_label_falls_back_to_user_id(db_session, store):
    space = make_space(db_session, occupied=True)
    make_session(db_session, space_id=space.id, user_id="abcdef12-3456-7890", status=SessionStatus.CHECKED_IN)
    inspection = run(SessionReconciler(store).inspect_space(space.id))
    assert inspection.profile is None
    assert inspection.owner_label == "abcdef12"

def test_repair_only_clears_occupied_flag(db_session, store):
    vehicle = make_vehicle(db_session)
    space = make_space(db_session, occupied=True, vehicle_id=vehicle.id)
    make_session(db_session, space_id=space.id, status=SessionStatus.BOOKED, session_id="S5")

    result = run(SessionReconciler(store).repair_occupancy(space.id))

    assert result.success is True
    db_session.expire_all()
    repaired = db_session.query(ParkingSpace).filter(ParkingSpace.id == space.id).first()
    assert repaired.is_occupied is False
    assert repaired.vehicle_id == vehicle.id
    booked = db_session.query(ParkingSession).filter(ParkingSession.id == "S5").first()
    assert booked.status == SessionStatus.BOOKED
    assert booked.space_id == space.id
    assert admin_log(db_session) == []

def test_repair_unknown_space(db_session, store):
    assert run(SessionReconciler(store).repair_occupancy("missing")).success is False

def test_end_session_sets_end_time_and_frees_space(db_session, store):
    space = make_space(db_session, occupied=True)
    make_session(db_session, space_id=space.id, status=SessionStatus.CHECKED_IN, session_id="S6")

    result = run(SessionReconciler(store).end_session(space.id))

    assert result.success is True
    assert result.session_id == "S6"
    db_session.expire_all()
    ended = db_session.query(ParkingSession).filter(ParkingSession.id == "S6").first()
    assert ended.end_time is not None
    assert ended.status == SessionStatus.CHECKED_IN
    assert db_session.query(ParkingSpace).filter(ParkingSpace.id == space.id).first().is_occupied is False

def test_end_session_without_active_session(db_session, store):
    space = make_space(db_session, occupied=True)
    result = run(SessionReconciler(store).end_session(space.id))
    assert result.success is False
    assert result.message == NO_ACTIVE_SESSION

# --- space creation ---
def test_create_space_numbers_by_section(db_session, store):
    reconciler = SessionReconciler(store, admin_id="A1")
    first = run(reconciler.create_space("North Wing", "car", "1 Rizal Ave", Decimal("150")))
    second = run(reconciler.create_space("North Wing", "car", "1 Rizal Ave", Decimal("150")))
    other = run(reconciler.create_space("Basement", "motorcycle", "1 Rizal Ave", Decimal("50")))
    assert (first["space_number"], second["space_number"], other["space_number"]) == ("W-01", "W-02", "B-01")
    assert first["is_occupied"] is False
    assert admin_log(db_session)[0] == ("add_space", "Added new parking space W-01 (car) in North Wing at 1 Rizal Ave")

def test_create_space_rejects_duplicates_and_bad_rates(db_session, store):
    make_space(db_session, space_number="W-01")
    reconciler = SessionReconciler(store)
    with pytest.raises(SpaceCreationError, match="already exists"):
        run(reconciler.create_space("North Wing", "car", "1 Rizal Ave", Decimal("150"), space_number="W-01"))
    with pytest.raises(SpaceCreationError):
        run(reconciler.create_space("North Wing", "car", "1 Rizal Ave", Decimal("0")))
