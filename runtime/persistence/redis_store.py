import json
import logging
import os
from typing import Any, Dict, List, Optional

import redis

from models.channel import COMPLETED_GRIDS_KEY, CURRENT_GENERATION_KEY, ChannelKind
from models.grid import Grid
from runtime.errors import PersistenceReadFailure
from runtime.persistence.grid_codec import decode_channels, encode_channels

logger = logging.getLogger(__name__)


# Queue names from config/env for production
def _job_queue():
    return os.getenv("FINALIZE_JOB_QUEUE", "boogie:finalize:jobs")


def _result_queue():
    return os.getenv("FINALIZE_RESULT_QUEUE", "boogie:finalize:results")


class GridRedisStore:
    """
    Redis persistence for grid generations and the finalize queue.

    Each generation lives in three channel keys; a save writes all three in
    one MULTI/EXEC so readers never see a half-applied grid.
    """

    def __init__(self, redis_client=None, url=None, prefix="boogie", lazy=False):
        self._redis = redis_client
        self.url = url
        self.prefix = prefix
        self.lazy = lazy

        if not lazy and self._redis is None:
            self._connect()

    # -----------------------------
    # Internal
    # -----------------------------

    def _connect(self):
        if self._redis is None:
            if not self.url:
                raise RuntimeError("Redis URL not provided")

            try:
                self._redis = redis.from_url(
                    self.url,
                    decode_responses=True,
                    socket_timeout=5,
                    socket_connect_timeout=5,
                )
                self._redis.ping()
                print(f"[GridRedisStore] Connected to Redis (prefix: {self.prefix})")
            except Exception as e:
                print(f"[GridRedisStore] Failed to connect to Redis: {e}")
                raise

    @property
    def redis(self):
        if self._redis is None:
            self._connect()
        return self._redis

    def _key(self, name: str) -> str:
        return f"{self.prefix}:{name}"

    # -----------------------------
    # GRID CHANNELS
    # -----------------------------

    def fetch_grid(self, generation_id: str) -> Grid:
        """Read a generation. Raises PersistenceReadFailure on I/O or corrupt data."""
        kinds = list(ChannelKind)
        try:
            values = self.redis.mget([k.key(generation_id, self.prefix) for k in kinds])
        except redis.RedisError as e:
            raise PersistenceReadFailure(f"redis read failed: {e}") from e
        return decode_channels(generation_id, dict(zip(kinds, values)))

    def load_grid(self, generation_id: str) -> Grid:
        """Never raises; substitutes an empty grid for missing or unreadable state."""
        try:
            return self.fetch_grid(generation_id)
        except PersistenceReadFailure as e:
            logger.warning(f"Using empty grid for {generation_id}: {e}")
            return Grid.empty(generation_id)

    def save_grid(self, generation_id: str, grid: Grid) -> bool:
        payloads = encode_channels(grid)
        try:
            pipe = self.redis.pipeline(transaction=True)
            for kind, payload in payloads.items():
                pipe.set(kind.key(generation_id, self.prefix), payload)
            pipe.execute()
            return True
        except redis.RedisError as e:
            logger.error(f"Failed to save grid {generation_id}: {e}")
            return False

    def current_generation(self) -> Optional[str]:
        try:
            return self.redis.get(self._key(CURRENT_GENERATION_KEY))
        except redis.RedisError as e:
            raise PersistenceReadFailure(f"redis read failed: {e}") from e

    def set_current_generation(self, generation_id: str) -> None:
        self.redis.set(self._key(CURRENT_GENERATION_KEY), generation_id)

    # -----------------------------
    # COMPLETED GRIDS
    # -----------------------------

    def archive_grid(self, grid: Grid, result: Optional[Dict[str, Any]] = None) -> None:
        record = {"grid": grid.to_dict(), "result": result or {}}
        self.redis.lpush(self._key(COMPLETED_GRIDS_KEY), json.dumps(record))

    def record_result(self, generation_id: str, result: Dict[str, Any]) -> None:
        """Attach a finalize outcome to an archived generation."""
        self.redis.hset(self._key(f"{COMPLETED_GRIDS_KEY}:results"), generation_id, json.dumps(result))

    def list_completed(self, limit: int = 20) -> List[Dict[str, Any]]:
        """Archived generations, newest first."""
        raw = self.redis.lrange(self._key(COMPLETED_GRIDS_KEY), 0, limit - 1)
        results = self.redis.hgetall(self._key(f"{COMPLETED_GRIDS_KEY}:results")) or {}
        records = []
        for item in raw:
            try:
                record = json.loads(item)
                generation_id = record["grid"]["generationId"]
                if generation_id in results:
                    record["result"] = json.loads(results[generation_id])
            except (ValueError, KeyError, TypeError):
                logger.warning("Skipping unreadable completed-grid record")
                continue
            records.append(record)
        return records

    # -----------------------------
    # FINALIZE QUEUE
    # -----------------------------

    def push_finalize_job(self, payload: dict):
        """
        Push a finalize job to the Redis queue.
        Returns the queue name for logging.
        """
        queue_name = _job_queue()
        try:
            self.redis.rpush(queue_name, json.dumps(payload))
            return queue_name
        except Exception as e:
            print(f"[GridRedisStore] Failed to push job to queue '{queue_name}': {e}")
            raise

    def pop_finalize_job(self, timeout=5):
        res = self.redis.blpop(_job_queue(), timeout=timeout)
        if not res:
            return None
        _, data = res
        return json.loads(data)

    def push_finalize_result(self, payload: dict):
        self.redis.rpush(_result_queue(), json.dumps(payload))
