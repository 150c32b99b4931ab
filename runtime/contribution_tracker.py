"""
Contribution Tracker

Derives slot ownership from the contribution log. Ownership is keyed by
email because user ids rotate between auth sessions.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

import config
from models.grid import Contribution, Grid, User, utcnow_iso
from runtime.change_channel import GridEvent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContributionPolicy:
    # Drop a user's older entries when they contribute again.
    supersede: bool = config.SUPERSEDE_CONTRIBUTIONS
    # Refuse writes to a second slot or to a slot another user owns.
    enforce_one_slot: bool = config.ENFORCE_ONE_SLOT_PER_USER


def owner_map(contributions: List[Contribution]) -> Dict[str, int]:
    """email -> slot of that email's most recent entry."""
    owned: Dict[str, int] = {}
    for c in contributions:
        owned[c.owner_email.strip().lower()] = c.slot_index
    return owned


def record_contribution(
    contributions: List[Contribution],
    user: User,
    index: int,
    supersede: bool = True,
    timestamp: Optional[str] = None,
) -> List[Contribution]:
    """Return a new log with ``user`` bound to ``index``."""
    if supersede:
        log = [c for c in contributions if c.owner_email.strip().lower() != user.key]
    else:
        log = list(contributions)
    log.append(
        Contribution(
            slot_index=index,
            owner_id=user.user_id,
            owner_email=user.key,
            timestamp=timestamp or utcnow_iso(),
        )
    )
    return log


class ContributionTracker:
    """
    Cached ownership view over a GridStateStore.

    The cache is rebuilt only when the contribution log itself changes;
    slot-array-only changes leave it untouched.
    """

    def __init__(self, store=None, policy: Optional[ContributionPolicy] = None):
        self.policy = policy or ContributionPolicy()
        self._log_signature: Optional[tuple] = None
        self._owned: Dict[str, int] = {}
        self.recomputations = 0
        self._unsubscribe = None
        if store is not None:
            self.refresh(store.state)
            self._unsubscribe = store.subscribe(self._on_event)

    def _on_event(self, event: GridEvent) -> None:
        self.refresh(event.grid)

    def refresh(self, grid: Grid) -> None:
        signature = tuple((c.slot_index, c.owner_email, c.timestamp) for c in grid.contributions)
        if signature == self._log_signature:
            return
        self._log_signature = signature
        self._owned = owner_map(grid.contributions)
        self.recomputations += 1

    def owned_slot(self, user: User) -> Optional[int]:
        return self._owned.get(user.key)

    def owner_of(self, index: int) -> Optional[str]:
        for email, slot in self._owned.items():
            if slot == index:
                return email
        return None

    def record(self, grid: Grid, user: User, index: int) -> List[Contribution]:
        return record_contribution(grid.contributions, user, index, supersede=self.policy.supersede)

    def can_contribute(self, grid: Grid, user: User, index: int) -> bool:
        """
        A slot is open to a user when nobody has recorded there yet, or the
        user already owns it. With one-slot enforcement the user may not
        own a different slot.
        """
        owned = owner_map(grid.contributions).get(user.key)
        if owned == index:
            return True
        if self.policy.enforce_one_slot and owned is not None:
            return False
        return not grid.slot(index).has_recording

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
