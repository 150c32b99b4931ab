"""
Grid Model

The replicated 4x4 grid: slots, takes and the contribution log for one
grid generation.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

SLOT_COUNT = 16
TAKE_COUNT = 3
GRID_COLUMNS = 4


def new_generation_id() -> str:
    return f"grid_{uuid.uuid4().hex[:8]}"


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_ref(value: Any) -> Optional[str]:
    """Stored media reference: a non-empty string, or None for an empty entry."""
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ValueError(f"media reference must be a string, got {type(value).__name__}")
    return value


@dataclass(frozen=True)
class User:
    """Identity supplied by the auth provider. Email is the ownership key."""
    user_id: str
    email: str

    @property
    def key(self) -> str:
        return self.email.strip().lower()


@dataclass
class Take:
    take1: Optional[str] = None
    take2: Optional[str] = None
    take3: Optional[str] = None

    def get(self, number: int) -> Optional[str]:
        if number not in (1, 2, 3):
            raise ValueError(f"take number must be 1..3, got {number}")
        return getattr(self, f"take{number}")

    def set(self, number: int, ref: Optional[str]) -> None:
        if number not in (1, 2, 3):
            raise ValueError(f"take number must be 1..3, got {number}")
        setattr(self, f"take{number}", ref)

    @property
    def any(self) -> bool:
        return bool(self.take1 or self.take2 or self.take3)

    @property
    def complete(self) -> bool:
        return bool(self.take1 and self.take2 and self.take3)

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {"take1": self.take1, "take2": self.take2, "take3": self.take3}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Take":
        data = data or {}
        return cls(
            take1=parse_ref(data.get("take1")),
            take2=parse_ref(data.get("take2")),
            take3=parse_ref(data.get("take3")),
        )


@dataclass
class Slot:
    index: int
    video: Optional[str] = None
    takes: Take = field(default_factory=Take)

    @property
    def filled(self) -> bool:
        return self.video is not None

    @property
    def has_recording(self) -> bool:
        return self.filled or self.takes.any

    def playable_ref(self, take_number: int) -> Optional[str]:
        """Stored reference for a take, falling back to the canonical video."""
        if self.takes.any:
            return self.takes.get(take_number)
        return self.video


@dataclass
class Contribution:
    slot_index: int
    owner_id: str
    owner_email: str
    timestamp: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "slotIndex": self.slot_index,
            "ownerId": self.owner_id,
            "ownerEmail": self.owner_email,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Contribution":
        index = int(data["slotIndex"])
        if not 0 <= index < SLOT_COUNT:
            raise ValueError(f"contribution slot out of range: {index}")
        return cls(
            slot_index=index,
            owner_id=str(data.get("ownerId", "")),
            owner_email=str(data["ownerEmail"]),
            timestamp=str(data.get("timestamp", "")),
        )


@dataclass
class Grid:
    """
    One grid generation.

    Attributes:
        generation_id: Identifier of this grid lifecycle
        slots: Exactly SLOT_COUNT slots, index order
        contributions: Ownership log, oldest first
    """
    generation_id: str
    slots: List[Slot] = field(default_factory=list)
    contributions: List[Contribution] = field(default_factory=list)

    def __post_init__(self):
        if not self.slots:
            self.slots = [Slot(index=i) for i in range(SLOT_COUNT)]
        if len(self.slots) != SLOT_COUNT:
            raise ValueError(f"grid needs {SLOT_COUNT} slots, got {len(self.slots)}")

    @classmethod
    def empty(cls, generation_id: Optional[str] = None) -> "Grid":
        return cls(generation_id=generation_id or new_generation_id())

    @property
    def videos(self) -> List[Optional[str]]:
        return [s.video for s in self.slots]

    @property
    def takes(self) -> List[Take]:
        return [s.takes for s in self.slots]

    @property
    def is_complete(self) -> bool:
        return all(s.video is not None for s in self.slots)

    @property
    def filled_count(self) -> int:
        return sum(1 for s in self.slots if s.filled)

    def slot(self, index: int) -> Slot:
        if not 0 <= index < SLOT_COUNT:
            raise IndexError(f"slot index out of range: {index}")
        return self.slots[index]

    def contributor_emails(self) -> List[str]:
        """Distinct contributor emails in first-seen order."""
        seen = []
        for c in self.contributions:
            if c.owner_email not in seen:
                seen.append(c.owner_email)
        return seen

    def copy(self) -> "Grid":
        return Grid.from_dict(self.to_dict())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "generationId": self.generation_id,
            "videos": self.videos,
            "takes": [t.to_dict() for t in self.takes],
            "contributions": [c.to_dict() for c in self.contributions],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Grid":
        """Strict parse. Raises ValueError/KeyError/TypeError on bad shape."""
        videos = data.get("videos") or [None] * SLOT_COUNT
        takes = data.get("takes") or [None] * SLOT_COUNT
        if not isinstance(videos, list) or not isinstance(takes, list):
            raise ValueError("videos and takes must be lists")
        if len(videos) != SLOT_COUNT or len(takes) != SLOT_COUNT:
            raise ValueError("videos and takes must each have 16 entries")
        slots = [
            Slot(index=i, video=parse_ref(videos[i]), takes=Take.from_dict(takes[i]))
            for i in range(SLOT_COUNT)
        ]
        contributions = [Contribution.from_dict(c) for c in data.get("contributions") or []]
        return cls(
            generation_id=str(data["generationId"]),
            slots=slots,
            contributions=contributions,
        )
