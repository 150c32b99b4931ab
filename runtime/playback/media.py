"""
Media element seam for the playback engine.

MediaElement is a headless element: it keeps position, pause state,
buffered readiness and visibility, and leaves decoding to whatever player
a concrete client wires in by subclassing it.
"""

import asyncio
import logging
from enum import IntEnum
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class ReadyState(IntEnum):
    """Buffered readiness, ordered like HTMLMediaElement.readyState."""
    HAVE_NOTHING = 0
    HAVE_METADATA = 1
    HAVE_CURRENT_DATA = 2
    HAVE_FUTURE_DATA = 3     # enough to start
    HAVE_ENOUGH_DATA = 4     # enough to play through


class MediaElement:
    def __init__(self, slot: int, take: int):
        self.slot = slot
        self.take = take
        self.src: Optional[str] = None
        self.current_time = 0.0
        self.paused = True
        self.ready_state = ReadyState.HAVE_NOTHING
        self.opacity = 0.0
        self.interactive = False
        self.on_ready: Optional[Callable[["MediaElement"], None]] = None

    @property
    def key(self):
        return (self.slot, self.take)

    def load(self, src: Optional[str]) -> None:
        self.src = src
        self.current_time = 0.0
        self.paused = True
        self.ready_state = ReadyState.HAVE_NOTHING

    def play(self) -> None:
        if self.src is None:
            return
        self.paused = False

    def pause(self) -> None:
        self.paused = True

    def set_ready_state(self, state: ReadyState) -> None:
        """Called by the player as buffering progresses."""
        self.ready_state = state
        if self.on_ready is not None:
            self.on_ready(self)

    def advance(self, seconds: float) -> None:
        if not self.paused:
            self.current_time += seconds

    def __repr__(self):
        return f"<MediaElement slot={self.slot} take={self.take} t={self.current_time:.3f} paused={self.paused}>"


class ObjectStoreResolver:
    """Resolves storage references to (possibly time-limited) playable URLs."""

    def __init__(self, object_store):
        self.object_store = object_store

    async def __call__(self, ref: str) -> Optional[str]:
        return await asyncio.to_thread(self.object_store.presigned_url, ref)
