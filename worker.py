import asyncio
import json
import logging
import time
import traceback
from typing import Any, Dict

from dotenv import load_dotenv

# =========================================================
# ENV
# =========================================================

load_dotenv()

import config
from composition.distributor import Distributor, EmailNotifier
from composition.mosaic_pipeline import CompositionPipeline
from models.grid import Grid
from runtime.persistence.object_store import ObjectStore
from runtime.persistence.redis_store import GridRedisStore

logging.basicConfig(level=config.LOG_LEVEL)
logger = logging.getLogger(__name__)

# =========================================================
# CLIENTS
# =========================================================


def build_pipeline() -> CompositionPipeline:
    object_store = None
    if config.S3_BUCKET:
        object_store = ObjectStore(
            endpoint=config.S3_ENDPOINT,
            bucket=config.S3_BUCKET,
            access_key=config.S3_ACCESS_KEY,
            secret_key=config.S3_SECRET_KEY,
            region=config.S3_REGION,
            presign_ttl=config.PRESIGN_TTL_SECONDS,
        )
    notifier = EmailNotifier() if config.SMTP_HOST else None
    return CompositionPipeline(
        object_store=object_store,
        distributor=Distributor(object_store=object_store, notifier=notifier),
    )


# =========================================================
# CORE EXECUTION
# =========================================================

def execute_job(job: Dict[str, Any], pipeline: CompositionPipeline) -> Dict[str, Any]:
    generation_id = job.get("generation_id")
    start = time.time()

    result = {
        "generation_id": generation_id,
        "status": "failure",
        "url": None,
        "error": None,
    }

    try:
        grid = Grid.from_dict(job["grid"])
        outcome = pipeline.run_for_grid(grid, job.get("recipients"))
        result.update(outcome.to_dict())
        result["status"] = "success"

    except Exception as e:
        print("\n[finalize-worker] EXECUTION ERROR")
        print(traceback.format_exc())
        result["error"] = {
            "message": str(e),
            "trace": traceback.format_exc(),
        }

    finally:
        result["latency_sec"] = round(time.time() - start, 3)

    return result

# =========================================================
# WORKER LOOP
# =========================================================


async def worker_loop(store: GridRedisStore, pipeline: CompositionPipeline, once: bool = False):
    print("[finalize-worker] started")

    while True:
        try:
            job = store.pop_finalize_job(timeout=5)
        except json.JSONDecodeError:
            print("[finalize-worker] invalid job payload")
            continue
        if not job:
            if once:
                return
            await asyncio.sleep(1)
            continue

        result = await asyncio.to_thread(execute_job, job, pipeline)
        store.push_finalize_result(result)

        summary = {
            "status": result["status"],
            "url": result["url"],
            "error": (result["error"] or {}).get("message"),
        }
        try:
            store.record_result(result["generation_id"], summary)
        except Exception as e:
            logger.warning(f"Could not record result for {result['generation_id']}: {e}")

        print(
            f"[finalize-worker] grid={result['generation_id']} "
            f"status={result['status']} url={result['url']}"
        )
        if once:
            return


# =========================================================
# ENTRY
# =========================================================

if __name__ == "__main__":
    redis_store = GridRedisStore(url=config.REDIS_URL, prefix=config.REDIS_KEY_PREFIX)
    asyncio.run(worker_loop(redis_store, build_pipeline()))
