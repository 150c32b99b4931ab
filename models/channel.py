"""
Channel Model

Persisted grid state is split over three channels per generation. The
channel kind is a closed set; keys are derived, never hand-built.
"""

from enum import Enum


class ChannelKind(Enum):
    GRID = "grid"
    TAKES = "takes"
    CONTRIBUTIONS = "contributions"

    def key(self, generation_id: str, prefix: str = "boogie") -> str:
        return f"{prefix}:{self.value}:{generation_id}"


CURRENT_GENERATION_KEY = "current-generation"
COMPLETED_GRIDS_KEY = "completed"
