"""
Grid State Store

Holds this context's in-memory copy of the shared grid and keeps it
converging with the persisted copy.

There is no coordinator and no cross-context lock. Every context polls the
backend on a fixed interval and replaces its memory copy whenever the
persisted state differs structurally. Writes are last-writer-wins on the
whole grid: two contexts saving close together may silently drop one write.
"""

import hashlib
import logging
from typing import Callable, Optional, Tuple

import config
from models.grid import Grid, new_generation_id
from runtime.change_channel import ChangeChannel, GridEvent, GridEventType, Listener
from runtime.errors import PersistenceReadFailure
from runtime.persistence.grid_codec import canonical_json
from runtime.scheduler import Scheduler, TimerHandle

logger = logging.getLogger(__name__)


def grid_version(grid: Grid) -> str:
    return hashlib.sha1(canonical_json(grid.to_dict()).encode("utf-8")).hexdigest()


class GridStateStore:
    """
    load/save/subscribe over a persistence backend.

    Args:
        backend: GridRedisStore or InMemoryGridBackend
        scheduler: Timer source for the reconciliation poll
        generation_id: Generation to materialize when none is current yet
        poll_interval: Seconds between reconciliation reads
        channel: Change channel to publish on (one is created if omitted)
    """

    def __init__(
        self,
        backend,
        scheduler: Optional[Scheduler] = None,
        generation_id: Optional[str] = None,
        poll_interval: float = config.RECONCILE_INTERVAL_SEC,
        channel: Optional[ChangeChannel] = None,
    ):
        self.backend = backend
        self.scheduler = scheduler
        self.poll_interval = poll_interval
        self.channel = channel or ChangeChannel()
        self._initial_generation = generation_id
        self._grid: Optional[Grid] = None
        self._version: Optional[str] = None
        self._poll_handle: Optional[TimerHandle] = None

    # -----------------------------
    # Contract
    # -----------------------------

    @property
    def state(self) -> Grid:
        if self._grid is None:
            self.load()
        return self._grid.copy()

    @property
    def version(self) -> Optional[str]:
        return self._version

    @property
    def generation_id(self) -> str:
        return self.state.generation_id

    def load(self) -> Grid:
        """Materialize the current generation. Never raises."""
        generation_id = self._current_generation()
        grid = self.backend.load_grid(generation_id)
        self._replace(grid)
        return grid.copy()

    def save(self, grid: Grid) -> bool:
        ok = self.backend.save_grid(grid.generation_id, grid)
        if not ok:
            return False
        if self._replace(grid):
            self.channel.publish(GridEvent(GridEventType.CHANGED, grid.copy(), self._version))
        return True

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        return self.channel.subscribe(listener)

    # -----------------------------
    # Reconciliation
    # -----------------------------

    def poll(self) -> Tuple[Grid, str]:
        """Fresh read of the persisted state and its version."""
        try:
            generation_id = self.backend.current_generation() or self._fallback_generation()
        except PersistenceReadFailure as e:
            logger.warning(f"Generation pointer unreadable, keeping memory state: {e}")
            return self.state, self._version
        grid = self.backend.load_grid(generation_id)
        return grid, grid_version(grid)

    def reconcile(self) -> bool:
        """Replace memory state if the persisted state differs. Returns True on change."""
        snapshot, version = self.poll()
        if version == self._version:
            return False
        previous = self._grid.generation_id if self._grid is not None else None
        self._replace(snapshot)
        logger.info(f"Reconciled grid {snapshot.generation_id} -> {version[:8]}")
        if previous is not None and previous != snapshot.generation_id:
            self.channel.publish(GridEvent(GridEventType.RESET, snapshot.copy(), version, remote=True))
        self.channel.publish(GridEvent(GridEventType.CHANGED, snapshot.copy(), version, remote=True))
        return True

    def start(self) -> None:
        if self.scheduler is None:
            raise RuntimeError("GridStateStore needs a scheduler to poll")
        if self._grid is None:
            self.load()
        if self._poll_handle is None:
            self._poll_handle = self.scheduler.call_every(self.poll_interval, self.reconcile)

    def stop(self) -> None:
        if self._poll_handle is not None:
            self._poll_handle.cancel()
            self._poll_handle = None

    # -----------------------------
    # Generations
    # -----------------------------

    def complete(self, grid: Grid) -> Grid:
        """Announce a finished grid and switch every reader to a fresh generation."""
        self.channel.publish(GridEvent(GridEventType.COMPLETED, grid.copy(), grid_version(grid)))
        fresh = Grid.empty(new_generation_id())
        self.backend.save_grid(fresh.generation_id, fresh)
        self.backend.set_current_generation(fresh.generation_id)
        self._replace(fresh)
        self.channel.publish(GridEvent(GridEventType.RESET, fresh.copy(), self._version))
        return fresh.copy()

    # -----------------------------
    # Internal
    # -----------------------------

    def _fallback_generation(self) -> str:
        if self._grid is not None:
            return self._grid.generation_id
        return self._initial_generation or new_generation_id()

    def _current_generation(self) -> str:
        try:
            current = self.backend.current_generation()
        except PersistenceReadFailure as e:
            logger.warning(f"Generation pointer unreadable: {e}")
            current = None
        if current:
            return current
        generation_id = self._fallback_generation()
        try:
            self.backend.set_current_generation(generation_id)
        except Exception as e:
            logger.warning(f"Could not persist generation pointer {generation_id}: {e}")
        return generation_id

    def _replace(self, grid: Grid) -> bool:
        version = grid_version(grid)
        changed = version != self._version
        self._grid = grid.copy()
        self._version = version
        return changed
