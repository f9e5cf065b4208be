import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Tuple
from auth.core.enums import ChangeType

logger = logging.getLogger(__name__)

ANY_EVENT = "*"

@dataclass(frozen=True)
class ChangeEvent:
    table: str
    type: ChangeType
    new: dict | None = None
    old: dict | None = None

Listener = Callable[[ChangeEvent], None]

class Subscription:
    def __init__(self, feed: "ChangeFeed", key: Tuple[str, str], listener: Listener):
        self._feed = feed
        self._key = key
        self._listener = listener
        self.active = True

    def unsubscribe(self):
        if self.active:
            self._feed._remove(self._key, self._listener)
            self.active = False

class ChangeFeed:
    """Row-level change notifications, multiplexed over one logical channel.

    Listeners are registered per (table, event) where event is INSERT, UPDATE,
    DELETE or "*". Delivery is synchronous and a failing listener never
    affects the writer or the other listeners.
    """

    def __init__(self):
        self._listeners: Dict[Tuple[str, str], List[Listener]] = {}

    def subscribe(self, table: str, event: ChangeType | str, listener: Listener) -> Subscription:
        name = event.value if isinstance(event, ChangeType) else event
        key = (table, name)
        self._listeners.setdefault(key, []).append(listener)
        return Subscription(self, key, listener)

    def _remove(self, key: Tuple[str, str], listener: Listener):
        s = self._listeners.get(key)
        if s and listener in s:
            s.remove(listener)

    def listener_count(self, table: str | None = None) -> int:
        return sum(len(v) for k, v in self._listeners.items() if table is None or k[0] == table)

    def publish(self, event: ChangeEvent):
        targets = list(self._listeners.get((event.table, event.type.value), []))
        targets += self._listeners.get((event.table, ANY_EVENT), [])
        for listener in targets:
            try:
                listener(event)
            except Exception:
                logger.warning("Change listener failed for %s %s", event.table, event.type.value, exc_info=True)

feed = ChangeFeed()
