"""
Playback Package

Synchronized multi-stream playback for one viewing session:
- media: headless media element, readiness levels, URL resolution
- synchronizer: coordinated start, drift correction, take cycling
"""

from runtime.playback.media import (
    MediaElement,
    ObjectStoreResolver,
    ReadyState,
)
from runtime.playback.synchronizer import (
    PlaybackConfig,
    PlaybackPhase,
    PlaybackSynchronizer,
    next_take,
)

__all__ = [
    # Engine
    "PlaybackSynchronizer",
    "PlaybackConfig",
    "PlaybackPhase",
    "next_take",

    # Media
    "MediaElement",
    "ObjectStoreResolver",
    "ReadyState",
]
