# runtime/persistence/memory_store.py
import json
import logging
from typing import Any, Dict, List, Optional

from models.channel import ChannelKind
from models.grid import Grid
from runtime.errors import PersistenceReadFailure
from runtime.persistence.grid_codec import decode_channels, encode_channels

logger = logging.getLogger(__name__)


class InMemoryGridBackend:
    """
    Same contract as GridRedisStore, held in a dict.

    Several GridStateStore instances may share one backend to stand in for
    independent tabs or processes.
    """

    def __init__(self):
        self.channels: Dict[str, str] = {}
        self.current: Optional[str] = None
        self.completed: List[Dict[str, Any]] = []
        self.jobs: List[dict] = []
        self.fail_reads = False

    def fetch_grid(self, generation_id: str) -> Grid:
        if self.fail_reads:
            raise PersistenceReadFailure("backend unavailable")
        raw = {k: self.channels.get(k.key(generation_id)) for k in ChannelKind}
        return decode_channels(generation_id, raw)

    def load_grid(self, generation_id: str) -> Grid:
        try:
            return self.fetch_grid(generation_id)
        except PersistenceReadFailure as e:
            logger.warning(f"Using empty grid for {generation_id}: {e}")
            return Grid.empty(generation_id)

    def save_grid(self, generation_id: str, grid: Grid) -> bool:
        payloads = encode_channels(grid)
        self.channels.update({k.key(generation_id): v for k, v in payloads.items()})
        return True

    def current_generation(self) -> Optional[str]:
        if self.fail_reads:
            raise PersistenceReadFailure("backend unavailable")
        return self.current

    def set_current_generation(self, generation_id: str) -> None:
        self.current = generation_id

    def archive_grid(self, grid: Grid, result: Optional[Dict[str, Any]] = None) -> None:
        self.completed.insert(0, {"grid": grid.to_dict(), "result": result or {}})

    def record_result(self, generation_id: str, result: Dict[str, Any]) -> None:
        for record in self.completed:
            if record["grid"]["generationId"] == generation_id:
                record["result"] = dict(result)

    def list_completed(self, limit: int = 20) -> List[Dict[str, Any]]:
        return self.completed[:limit]

    def push_finalize_job(self, payload: dict):
        self.jobs.append(json.loads(json.dumps(payload)))
        return "memory"
