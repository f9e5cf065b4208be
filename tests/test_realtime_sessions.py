import asyncio

from realtime.feed import ChangeEvent, ChangeFeed
from realtime.sessions import AdminSessionRegistry
from realtime.ws_manager import ConnectionManager
from auth.core.enums import ChangeType

class FakeSocket:
    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    async def send_json(self, message):
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(message)

def test_connection_manager_drops_failed_sockets():
    manager = ConnectionManager()
    good, broken = FakeSocket(), FakeSocket(fail=True)

    async def scenario():
        await manager.connect(good, "A1")
        await manager.connect(broken, "A1")
        await manager.send_to_user("A1", {"type": "dashboard_updated"})
        await manager.send_to_user("nobody", {"type": "dashboard_updated"})

    asyncio.run(scenario())
    assert good.sent == [{"type": "dashboard_updated"}]
    assert manager.connection_count("A1") == 1
    asyncio.run(manager.disconnect(good))
    assert manager.connection_count("A1") == 0
    assert "A1" not in manager.admin_sockets

def test_feed_isolates_failing_listeners():
    feed = ChangeFeed()
    seen = []

    def broken(event):
        raise ValueError("listener bug")

    feed.subscribe("payments", ChangeType.INSERT, broken)
    sub = feed.subscribe("payments", "*", seen.append)
    feed.subscribe("parking_spaces", ChangeType.DELETE, seen.append)

    event = ChangeEvent(table="payments", type=ChangeType.INSERT, new={"id": "p1"})
    feed.publish(event)
    feed.publish(ChangeEvent(table="parking_spaces", type=ChangeType.UPDATE, new={"id": "x"}))
    assert seen == [event]

    sub.unsubscribe()
    sub.unsubscribe()
    assert feed.listener_count("payments") == 1

def test_registry_replaces_previous_session(store):
    registry = AdminSessionRegistry()

    async def scenario():
        first = await registry.start("A1", store)
        second = await registry.start("A1", store)
        state = (first.active, second.active, registry.get("A1") is second, len(registry))
        hidden = await registry.set_visible("A1", False)
        await registry.shutdown()
        return state, hidden.subscribed

    state, subscribed = asyncio.run(scenario())
    assert state == (False, True, True, 1)
    assert subscribed is False
    assert len(registry) == 0
    assert store.feed.listener_count() == 0

def test_registry_stop_unknown_admin():
    assert asyncio.run(AdminSessionRegistry().stop("nobody")) is False
