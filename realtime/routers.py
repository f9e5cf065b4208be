from fastapi import APIRouter, Depends, HTTPException, status
from auth.core.enums import ActivityFeedName
from auth.services.auth_service import require_admin
from parking.store import ParkingStore, get_store
from .schemas import VisibilityUpdate, DashboardRead, ActivityListRead
from .sessions import registry
from .sync import RealtimeSyncController

router = APIRouter(prefix="/admin", tags=["Admin Dashboard"])

def _controller(admin_id: str) -> RealtimeSyncController:
    controller = registry.get(admin_id)
    if controller is None or not controller.active:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Admin session not started")
    return controller

@router.post("/session", response_model=DashboardRead)
async def start_admin_session(store: ParkingStore = Depends(get_store), current_admin=Depends(require_admin)):
    controller = await registry.start(current_admin.id, store)
    return controller.snapshot()

@router.delete("/session", status_code=204)
async def end_admin_session(current_admin=Depends(require_admin)):
    await registry.stop(current_admin.id)
    return

@router.put("/session/visibility", response_model=DashboardRead)
async def set_visibility(request: VisibilityUpdate, current_admin=Depends(require_admin)):
    controller = _controller(current_admin.id)
    await controller.set_visible(request.visible)
    return controller.snapshot()

@router.get("/dashboard", response_model=DashboardRead)
async def get_dashboard(current_admin=Depends(require_admin)):
    return _controller(current_admin.id).snapshot()

@router.post("/dashboard/refresh", response_model=DashboardRead)
async def refresh_dashboard(current_admin=Depends(require_admin)):
    controller = _controller(current_admin.id)
    await controller.refresh_all()
    return controller.snapshot()

@router.get("/activities/{feed}", response_model=ActivityListRead)
async def list_activities(feed: ActivityFeedName, current_admin=Depends(require_admin)):
    controller = _controller(current_admin.id)
    return {"feed": feed.value, "items": controller.activity_list(feed, view_all=True)}
