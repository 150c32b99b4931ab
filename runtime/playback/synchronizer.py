"""
Playback Synchronizer

Keeps up to 16 slots x 3 takes of media elements playing in lockstep for
one viewing session and cycles the visible take.

Phases: IDLE -> LOADING(take) -> READY -> PLAYING, and back to LOADING on
every take cycle.

Timers (all owned by the session, all cancelled by teardown):
- reconciliation poll of the grid store
- drift tick, snapping followers to each take group's reference element
- take cycle, advancing the visible take and re-arming coordinated start
- fallback start, a one-shot per not-yet-started state

Stale callbacks are filtered by comparing a captured session/epoch number
against the current one. There are no locks: everything runs on one
cooperative scheduler.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

import config
from models.grid import SLOT_COUNT, TAKE_COUNT, Grid
from runtime.change_channel import GridEvent
from runtime.grid_state_store import GridStateStore
from runtime.playback.media import MediaElement, ReadyState
from runtime.scheduler import Scheduler, TimerHandle

logger = logging.getLogger(__name__)

Key = Tuple[int, int]
UrlResolver = Callable[[str], Awaitable[Optional[str]]]
ElementFactory = Callable[[int, int], MediaElement]


class PlaybackPhase(Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    PLAYING = "playing"


@dataclass(frozen=True)
class PlaybackConfig:
    drift_tick: float = config.DRIFT_TICK_SEC
    drift_tolerance: float = config.DRIFT_TOLERANCE_SEC
    cycle_interval: float = config.TAKE_CYCLE_SEC
    fallback_wait: float = config.FALLBACK_START_SEC
    full_ready: ReadyState = ReadyState.HAVE_ENOUGH_DATA
    loose_ready: ReadyState = ReadyState.HAVE_FUTURE_DATA


def next_take(take: int) -> int:
    return take % TAKE_COUNT + 1


class PlaybackSynchronizer:
    def __init__(
        self,
        store: GridStateStore,
        resolver: UrlResolver,
        scheduler: Scheduler,
        element_factory: ElementFactory = MediaElement,
        playback_config: Optional[PlaybackConfig] = None,
        poll_store: bool = True,
    ):
        self.store = store
        self.resolver = resolver
        self.scheduler = scheduler
        self.element_factory = element_factory
        self.config = playback_config or PlaybackConfig()
        self.poll_store = poll_store

        self.phase = PlaybackPhase.IDLE
        self.active_take = 1
        self.elements: Dict[Key, MediaElement] = {}
        self.url_cache: Dict[Key, Tuple[str, str]] = {}
        self.resolve_calls = 0

        self._grid: Optional[Grid] = None
        self._preloaded: Set[int] = set()
        self._playing: Set[Key] = set()
        self._started = False
        self._session = 0
        self._epoch = 0
        self._live = False
        self._unsubscribe = None
        self._drift_handle: Optional[TimerHandle] = None
        self._cycle_handle: Optional[TimerHandle] = None
        self._fallback_handle: Optional[TimerHandle] = None

    # -----------------------------
    # Lifecycle
    # -----------------------------

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> None:
        if self._live:
            return
        self._live = True
        self._session += 1
        session = self._session
        self._grid = self.store.state
        self._unsubscribe = self.store.subscribe(self._on_grid_event)
        if self.poll_store:
            self.store.start()

        self.phase = PlaybackPhase.LOADING
        await self.preload(self.active_take)
        await self.preload(next_take(self.active_take))
        if session != self._session:
            return

        self._apply_visibility()
        self._drift_handle = self.scheduler.call_every(
            self.config.drift_tick, lambda: self.drift_tick(session)
        )
        self._cycle_handle = self.scheduler.call_every(
            self.config.cycle_interval, lambda: self.cycle_take(session)
        )
        self._arm_start()

    def teardown(self) -> None:
        """Cancel every timer and turn in-flight callbacks into no-ops."""
        self._live = False
        self._session += 1
        self._epoch += 1
        for handle in (self._drift_handle, self._cycle_handle, self._fallback_handle):
            if handle is not None:
                handle.cancel()
        self._drift_handle = self._cycle_handle = self._fallback_handle = None
        if self.poll_store:
            self.store.stop()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        for element in self.elements.values():
            element.pause()
        self._playing.clear()
        self._started = False
        self.phase = PlaybackPhase.IDLE

    # -----------------------------
    # Preloading
    # -----------------------------

    def element(self, slot: int, take: int) -> MediaElement:
        key = (slot, take)
        if key not in self.elements:
            el = self.element_factory(slot, take)
            el.on_ready = self._on_element_ready
            self.elements[key] = el
        return self.elements[key]

    async def _resolve(self, key: Key, ref: Optional[str]) -> Optional[str]:
        if ref is None:
            return None
        cached = self.url_cache.get(key)
        if cached is not None and cached[0] == ref:
            return cached[1]
        self.resolve_calls += 1
        try:
            url = await self.resolver(ref)
        except Exception as e:
            logger.warning(f"Could not resolve slot {key[0]} take {key[1]}: {e}")
            return None
        if url:
            self.url_cache[key] = (ref, url)
        return url

    async def preload(self, take: int) -> bool:
        """
        Resolve and load every slot's URL for ``take``.
        Returns True if any element's source changed.
        """
        session = self._session
        grid = self._grid or self.store.state
        refs = [grid.slots[i].playable_ref(take) for i in range(SLOT_COUNT)]
        urls = await asyncio.gather(*(self._resolve((i, take), refs[i]) for i in range(SLOT_COUNT)))
        if session != self._session:
            return False

        changed = False
        for i, url in enumerate(urls):
            if url is None and (i, take) not in self.elements:
                continue
            el = self.element(i, take)
            if el.src != url:
                el.load(url)
                self._playing.discard(el.key)
                changed = True
        self._preloaded.add(take)
        if changed:
            logger.debug(f"Preloaded take {take}")
        return changed

    # -----------------------------
    # Coordinated start
    # -----------------------------

    def eligible_elements(self) -> List[MediaElement]:
        return [
            el
            for _, el in sorted(self.elements.items())
            if el.src is not None
        ]

    def _arm_start(self) -> None:
        """Enter a fresh not-yet-started state."""
        self._started = False
        self._epoch += 1
        epoch = self._epoch
        if self._fallback_handle is not None:
            self._fallback_handle.cancel()
        self._fallback_handle = self.scheduler.call_later(
            self.config.fallback_wait, lambda: self._fallback_start(epoch)
        )
        self.try_start()

    def try_start(self) -> bool:
        if not self._live or self._started:
            return False
        eligible = self.eligible_elements()
        if not eligible:
            self.phase = PlaybackPhase.READY
            return False
        if any(el.ready_state < self.config.full_ready for el in eligible):
            self.phase = PlaybackPhase.LOADING
            return False
        self.phase = PlaybackPhase.READY
        self._begin(eligible, self._epoch)
        return True

    def _begin(self, elements: List[MediaElement], epoch: int) -> None:
        if epoch != self._epoch or self._started:
            return
        for el in elements:
            el.current_time = 0.0
        for el in elements:
            el.play()
        self._playing = {el.key for el in elements}
        self._started = True
        self.phase = PlaybackPhase.PLAYING
        if self._fallback_handle is not None:
            self._fallback_handle.cancel()
            self._fallback_handle = None
        self.align()
        logger.info(f"Started {len(elements)} elements on take {self.active_take}")

    def _fallback_start(self, epoch: int) -> None:
        if not self._live or epoch != self._epoch or self._started:
            return
        self._fallback_handle = None
        partial = [el for el in self.eligible_elements() if el.ready_state >= self.config.loose_ready]
        if not partial:
            logger.warning("Fallback start found no element ready to play")
            return
        logger.warning(
            f"Full readiness not reached in {self.config.fallback_wait}s, "
            f"starting {len(partial)}/{len(self.eligible_elements())} elements"
        )
        self._begin(partial, epoch)

    def _on_element_ready(self, el: MediaElement) -> None:
        if not self._live or el.src is None:
            return
        if not self._started:
            self.try_start()
            return
        # Late joiner after a partial start.
        if el.key not in self._playing and el.ready_state >= self.config.loose_ready:
            ref = self._reference(el.take)
            el.current_time = ref.current_time if ref is not None else 0.0
            el.play()
            self._playing.add(el.key)

    # -----------------------------
    # Drift correction
    # -----------------------------

    def take_groups(self) -> Dict[int, List[MediaElement]]:
        groups: Dict[int, List[MediaElement]] = {}
        for key in sorted(self._playing):
            el = self.elements[key]
            if el.src is None:
                continue
            groups.setdefault(el.take, []).append(el)
        return groups

    def _reference(self, take: int) -> Optional[MediaElement]:
        group = self.take_groups().get(take)
        return group[0] if group else None

    def align(self) -> None:
        for group in self.take_groups().values():
            reference = group[0]
            for follower in group[1:]:
                follower.current_time = reference.current_time

    def drift_tick(self, session: Optional[int] = None) -> int:
        """One correction pass. Returns the number of elements snapped."""
        if session is not None and session != self._session:
            return 0
        if not self._started:
            return 0
        snapped = 0
        tolerance = self.config.drift_tolerance
        for group in self.take_groups().values():
            reference = group[0]
            for el in group:
                if el.paused:
                    el.play()
            for follower in group[1:]:
                delta = follower.current_time - reference.current_time
                if abs(delta) > tolerance:
                    follower.current_time = reference.current_time
                    snapped += 1
        return snapped

    # -----------------------------
    # Take cycling
    # -----------------------------

    def _apply_visibility(self) -> None:
        for el in self.elements.values():
            visible = el.take == self.active_take
            el.opacity = 1.0 if visible else 0.0
            el.interactive = visible

    async def cycle_take(self, session: Optional[int] = None) -> None:
        if session is not None and session != self._session:
            return
        if not self._live:
            return
        session = self._session
        self.active_take = next_take(self.active_take)
        self._apply_visibility()
        self.phase = PlaybackPhase.LOADING
        self._arm_start()

        upcoming = next_take(self.active_take)
        changed = await self.preload(upcoming)
        if session != self._session:
            return
        self._apply_visibility()
        if changed and not self._started:
            self.try_start()

    # -----------------------------
    # Grid changes
    # -----------------------------

    def _on_grid_event(self, event: GridEvent) -> None:
        if not self._live:
            return
        self._grid = event.grid
        session = self._session
        self.scheduler.call_later(0, lambda: self._rederive(session))

    async def _rederive(self, session: int) -> None:
        if session != self._session:
            return
        changed = False
        for take in sorted(self._preloaded):
            changed = await self.preload(take) or changed
            if session != self._session:
                return
        if changed:
            self._apply_visibility()
            self.phase = PlaybackPhase.LOADING
            self._arm_start()
