# main.py
import logging
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from auth.core.config import settings
from auth.core.enums import UserRole
from auth.database import SessionLocal, init_db
from auth.models import user as user_model  # registers the profiles table
from auth.services.auth_service import profile_from_token
from parking import models as parking_models  # registers the parking tables
from parking.routers import router as parking_router
from payments.routers import router as payments_router
from realtime.routers import router as dashboard_router
from realtime.sessions import registry
from realtime.ws_manager import manager

logging.basicConfig(level=settings.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

init_db()

app = FastAPI(
    title="Parking Hub Admin API",
    description="Check-in/check-out reconciliation, live admin dashboard and payment webhook relay.",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

api_prefix = "/api/v1"
app.include_router(parking_router, prefix=api_prefix)
app.include_router(dashboard_router, prefix=api_prefix)
app.include_router(payments_router)

@app.on_event("shutdown")
async def stop_admin_sessions():
    logger.info("Stopping %d admin session(s)", len(registry))
    await registry.shutdown()

@app.get("/", tags=["Root"])
def read_root():
    return {"message": "Parking Hub Admin API"}

@app.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    token = ws.query_params.get("token")
    if not token:
        await ws.close(code=4401)
        return
    db = SessionLocal()
    try:
        user = profile_from_token(db, token)
    finally:
        db.close()
    if user is None:
        await ws.close(code=4401)
        return
    if user.role != UserRole.ADMIN:
        await ws.close(code=4403)
        return
    user_id = user.id
    await ws.accept()
    await manager.connect(ws, user_id)
    # an open dashboard socket counts as a visible tab
    await registry.set_visible(user_id, True)
    try:
        while True:
            try:
                data = await ws.receive_json()
            except ValueError:
                await ws.send_json({"type": "error", "payload": {"code": "bad_message"}})
                continue
            t = data.get("type") if isinstance(data, dict) else None
            if t == "visibility":
                visible = bool((data.get("payload") or {}).get("visible", True))
                await registry.set_visible(user_id, visible)
            else:
                await ws.send_json({"type": "heartbeat", "payload": {"ts": data.get("ts") if isinstance(data, dict) else None}})
    except WebSocketDisconnect:
        await manager.disconnect(ws)
        if manager.connection_count(user_id) == 0:
            await registry.set_visible(user_id, False)
