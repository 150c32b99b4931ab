# runtime/change_channel.py
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List

from models.grid import Grid

logger = logging.getLogger(__name__)


class GridEventType(Enum):
    CHANGED = "changed"        # memory state replaced (local write or remote reconcile)
    COMPLETED = "completed"    # all 16 slots filled; carries the finished grid
    RESET = "reset"            # a fresh generation became current


@dataclass
class GridEvent:
    type: GridEventType
    grid: Grid
    version: str
    remote: bool = False


Listener = Callable[[GridEvent], None]


class ChangeChannel:
    """Explicit publish/subscribe channel owned by a GridStateStore."""

    def __init__(self):
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def publish(self, event: GridEvent) -> None:
        # Snapshot so listeners may unsubscribe while being notified.
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(f"Grid listener failed on {event.type.value}")

    def __len__(self) -> int:
        return len(self._listeners)
