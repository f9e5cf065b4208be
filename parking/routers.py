import logging
from fastapi import APIRouter, Depends, HTTPException, Query, status
from typing import List
from auth.services.auth_service import require_admin
from realtime.sessions import registry
from .schemas import (
    ScanRequest, ReconcileResponse,
    ParkingSpaceCreate, ParkingSpaceRead,
    SpaceSessionRead,
)
from .services import SessionReconciler, SpaceCreationError, ReconcileResult
from .store import ParkingStore, StoreError, get_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["Parking Admin"])

def get_reconciler(store: ParkingStore = Depends(get_store), current_admin=Depends(require_admin)) -> SessionReconciler:
    controller = registry.get(current_admin.id)
    return SessionReconciler(
        store,
        admin_id=current_admin.id,
        on_changed=controller.request_refresh if controller else None,
    )

def _require_confirm(confirm: bool):
    if not confirm:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Confirmation required")

async def _existing_space(store: ParkingStore, space_id: str) -> dict:
    try:
        space = await store.get_space(space_id)
    except StoreError:
        logger.exception("Could not load space %s", space_id)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal error")
    if not space:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Parking space not found")
    return space

def _respond(result: ReconcileResult) -> ReconcileResult:
    if not result.success:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=result.message)
    return result

@router.post("/scan", response_model=ReconcileResponse)
async def submit_scan(request: ScanRequest, reconciler: SessionReconciler = Depends(get_reconciler)):
    result = await reconciler.scan(request.mode, request.payload, request.space_id)
    return _respond(result)

@router.get("/spaces", response_model=List[ParkingSpaceRead])
async def list_spaces(store: ParkingStore = Depends(get_store), current_admin=Depends(require_admin)):
    try:
        return await store.list_spaces()
    except StoreError:
        logger.exception("Error fetching parking spaces")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal error")

@router.post("/spaces", response_model=ParkingSpaceRead, status_code=status.HTTP_201_CREATED)
async def create_space(request: ParkingSpaceCreate, reconciler: SessionReconciler = Depends(get_reconciler)):
    try:
        return await reconciler.create_space(
            request.section, request.category, request.address, request.daily_rate, request.space_number,
        )
    except SpaceCreationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except StoreError:
        logger.exception("Error adding space")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to add space")

@router.get("/spaces/{space_id}/session", response_model=SpaceSessionRead)
async def get_space_session(space_id: str, reconciler: SessionReconciler = Depends(get_reconciler)):
    inspection = await reconciler.inspect_space(space_id)
    if inspection.error:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=inspection.error)
    if inspection.space is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Parking space not found")
    return {
        "space": inspection.space,
        "session": inspection.session,
        "profile": inspection.profile,
        "vehicle": inspection.vehicle,
        "owner_label": inspection.owner_label,
        "inconsistent": inspection.inconsistent,
        "message": inspection.message,
    }

@router.post("/spaces/{space_id}/repair", response_model=ReconcileResponse)
async def repair_space(
    space_id: str,
    confirm: bool = Query(False),
    store: ParkingStore = Depends(get_store),
    reconciler: SessionReconciler = Depends(get_reconciler),
):
    _require_confirm(confirm)
    await _existing_space(store, space_id)
    return _respond(await reconciler.repair_occupancy(space_id))

@router.post("/spaces/{space_id}/end-session", response_model=ReconcileResponse)
async def end_space_session(
    space_id: str,
    confirm: bool = Query(False),
    store: ParkingStore = Depends(get_store),
    reconciler: SessionReconciler = Depends(get_reconciler),
):
    _require_confirm(confirm)
    await _existing_space(store, space_id)
    return _respond(await reconciler.end_session(space_id))

@router.delete("/spaces/{space_id}", response_model=ReconcileResponse)
async def delete_space(
    space_id: str,
    confirm: bool = Query(False),
    store: ParkingStore = Depends(get_store),
    reconciler: SessionReconciler = Depends(get_reconciler),
):
    _require_confirm(confirm)
    await _existing_space(store, space_id)
    return _respond(await reconciler.delete_space(space_id))
