"""
Grid Session

The write side of the shared grid for one client context: slot and take
updates, the completion path and maintenance helpers.

Every write builds the complete next grid (slots plus contribution log) and
hands it to GridStateStore.save in one call, so the two are never persisted
separately.
"""

import asyncio
import inspect
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Set, Union

import config
from models.grid import SLOT_COUNT, Grid, User
from runtime.contribution_tracker import ContributionPolicy, ContributionTracker
from runtime.errors import BoogieError, SlotLockedError, UploadFailure, ValidationError
from runtime.grid_state_store import GridStateStore
from runtime.persistence.object_store import is_remote_ref

logger = logging.getLogger(__name__)

Media = Union[str, Path]
CompletionTrigger = Callable[[Grid], Any]


def finalize_job_trigger(backend) -> CompletionTrigger:
    """Completion trigger that queues a finalize job for worker.py."""

    def trigger(grid: Grid) -> None:
        job = {
            "generation_id": grid.generation_id,
            "grid": grid.to_dict(),
            "recipients": grid.contributor_emails(),
            "queued_at": datetime.now().isoformat(),
        }
        queue = backend.push_finalize_job(job)
        logger.info(f"Queued finalize for {grid.generation_id} on {queue}")

    return trigger


class GridSession:
    def __init__(
        self,
        store: GridStateStore,
        object_store=None,
        tracker: Optional[ContributionTracker] = None,
        policy: Optional[ContributionPolicy] = None,
        on_complete: Optional[CompletionTrigger] = None,
        key_prefix: str = config.MEDIA_KEY_PREFIX,
    ):
        self.store = store
        self.object_store = object_store
        self.tracker = tracker or ContributionTracker(store, policy)
        self.on_complete = on_complete
        self.key_prefix = key_prefix
        self._completed: Set[str] = set()

    # -----------------------------
    # Reads
    # -----------------------------

    def owned_slot(self, user: User) -> Optional[int]:
        return self.tracker.owned_slot(user)

    def can_contribute(self, user: User, index: int) -> bool:
        _check_index(index)
        return self.tracker.can_contribute(self.store.state, user, index)

    # -----------------------------
    # Media resolution
    # -----------------------------

    def _media_key(self, generation_id: str, index: int, label: str, media: Media) -> str:
        ext = os.path.splitext(str(media))[1] or ".webm"
        stamp = datetime.now().strftime("%Y%m%dT%H%M%S%f")
        return f"{self.key_prefix}/{generation_id}_{index}_{label}_{stamp}{ext}"

    async def resolve_media(self, media: Media, generation_id: str, index: int, label: str) -> str:
        """
        Turn media into a durable storage reference.

        Remote references are reused as-is. Local files are uploaded; if the
        upload fails the raw local reference is kept and the write goes on.
        """
        raw = str(media)
        if is_remote_ref(raw, self.key_prefix):
            return raw
        if self.object_store is None:
            logger.warning(f"No object store configured, keeping raw reference {raw}")
            return raw
        key = self._media_key(generation_id, index, label, media)
        try:
            return await asyncio.to_thread(self.object_store.upload_file, Path(raw), key, "video/webm")
        except UploadFailure as e:
            logger.warning(f"Upload failed for slot {index} {label}, using raw reference: {e}")
            return raw

    # -----------------------------
    # Writes
    # -----------------------------

    def _locked_check(self, grid: Grid, user: User, index: int) -> None:
        if not self.tracker.can_contribute(grid, user, index):
            raise SlotLockedError(f"slot {index} is not open to {user.key}")

    async def update_slot(self, user: User, index: int, media: Media) -> Grid:
        _check_index(index)
        self._locked_check(self.store.state, user, index)

        ref = await self.resolve_media(media, self.store.generation_id, index, "video")

        # Narrow the lost-update window; this is not a lock.
        self.store.reconcile()
        grid = self.store.state
        self._locked_check(grid, user, index)

        grid.slot(index).video = ref
        grid.contributions = self.tracker.record(grid, user, index)
        return await self._commit(grid)

    async def update_takes(
        self,
        user: User,
        index: int,
        take1: Optional[Media] = None,
        take2: Optional[Media] = None,
        take3: Optional[Media] = None,
    ) -> Grid:
        _check_index(index)
        supplied: Dict[int, Media] = {
            n: m for n, m in ((1, take1), (2, take2), (3, take3)) if m is not None
        }
        if not supplied:
            raise ValidationError("update_takes needs at least one take")
        self._locked_check(self.store.state, user, index)

        generation_id = self.store.generation_id
        numbers = sorted(supplied)
        refs = await asyncio.gather(
            *(self.resolve_media(supplied[n], generation_id, index, f"take{n}") for n in numbers)
        )
        resolved = dict(zip(numbers, refs))

        self.store.reconcile()
        grid = self.store.state
        self._locked_check(grid, user, index)

        slot = grid.slot(index)
        for number, ref in resolved.items():
            slot.takes.set(number, ref)
        # Canonical follows the last take written in this call; a full triad lands on take3.
        slot.video = resolved[numbers[-1]]
        grid.contributions = self.tracker.record(grid, user, index)
        return await self._commit(grid)

    async def _commit(self, grid: Grid) -> Grid:
        if not self.store.save(grid):
            raise BoogieError(f"could not persist grid {grid.generation_id}")
        if grid.is_complete:
            await self._complete(grid)
        return self.store.state

    async def _complete(self, grid: Grid) -> None:
        if grid.generation_id in self._completed:
            return
        self._completed.add(grid.generation_id)
        logger.info(f"Grid {grid.generation_id} complete with {len(grid.contributions)} contributions")

        if self.on_complete is not None:
            try:
                result = self.on_complete(grid)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                # The full grid stays persisted; the next write retries completion.
                self._completed.discard(grid.generation_id)
                logger.error(f"Completion trigger failed for {grid.generation_id}: {e}")
                raise
        try:
            self.store.backend.archive_grid(grid, {"status": "queued"})
        except Exception as e:
            logger.warning(f"Could not archive grid {grid.generation_id}: {e}")
        self.store.complete(grid)

    # -----------------------------
    # Maintenance
    # -----------------------------

    def clear(self) -> Grid:
        """Wipe slots, takes and contributions of the current generation."""
        empty = Grid.empty(self.store.generation_id)
        if not self.store.save(empty):
            raise BoogieError(f"could not clear grid {empty.generation_id}")
        logger.info(f"Cleared grid {empty.generation_id}")
        return empty

    def force_sync(self) -> bool:
        return self.store.reconcile()


def _check_index(index: int) -> None:
    if not isinstance(index, int) or isinstance(index, bool) or not 0 <= index < SLOT_COUNT:
        raise ValidationError(f"slot index must be 0..{SLOT_COUNT - 1}, got {index!r}")
