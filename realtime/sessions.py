import logging
from datetime import datetime
from typing import Dict

from parking.store import ParkingStore
from .sync import RealtimeSyncController
from .ws_manager import manager

logger = logging.getLogger(__name__)

class AdminSessionRegistry:
    """One sync controller per logged-in admin."""

    def __init__(self):
        self._controllers: Dict[str, RealtimeSyncController] = {}

    def get(self, admin_id: str) -> RealtimeSyncController | None:
        return self._controllers.get(admin_id)

    def __len__(self):
        return len(self._controllers)

    async def start(self, admin_id: str, store: ParkingStore, session_start: datetime | None = None) -> RealtimeSyncController:
        previous = self._controllers.pop(admin_id, None)
        if previous is not None:
            await previous.stop()

        async def push(message: dict):
            await manager.send_to_user(admin_id, message)

        controller = RealtimeSyncController(store, admin_id, on_update=push)
        self._controllers[admin_id] = controller
        await controller.start(session_start, visible=True)
        return controller

    async def stop(self, admin_id: str) -> bool:
        controller = self._controllers.pop(admin_id, None)
        if controller is None:
            return False
        await controller.stop()
        return True

    async def set_visible(self, admin_id: str, visible: bool) -> RealtimeSyncController | None:
        controller = self._controllers.get(admin_id)
        if controller is not None:
            await controller.set_visible(visible)
        return controller

    async def shutdown(self):
        for admin_id in list(self._controllers):
            await self.stop(admin_id)
        logger.info("All admin sessions stopped")

registry = AdminSessionRegistry()
