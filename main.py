import asyncio
import logging
import os
import shutil
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List

from dotenv import load_dotenv
from fastapi import BackgroundTasks, Body, FastAPI, File, HTTPException, Request, UploadFile
from fastapi.responses import FileResponse
from fastapi.staticfiles import StaticFiles

# Load .env from project root (works regardless of cwd when uvicorn --reload runs)
env_path = Path(__file__).resolve().parent / ".env"
load_dotenv(env_path)

import config
from models.grid import Grid
from runtime.errors import BoogieError, TranscodeFailure, UploadFailure, ValidationError

logging.basicConfig(level=config.LOG_LEVEL)
logger = logging.getLogger(__name__)

# DO NOT initialize heavy objects at import time
grid_backend = None
object_store = None
pipeline = None

app = FastAPI(title="Boogie Square")

Path(config.OUTPUT_DIR).mkdir(parents=True, exist_ok=True)
app.mount("/outputs", StaticFiles(directory=config.OUTPUT_DIR), name="outputs")


def get_grid_backend():
    global grid_backend
    if grid_backend is None:
        from runtime.persistence.redis_store import GridRedisStore
        grid_backend = GridRedisStore(url=config.REDIS_URL, prefix=config.REDIS_KEY_PREFIX, lazy=True)
    return grid_backend


def get_object_store():
    global object_store
    if object_store is None and config.S3_BUCKET:
        from runtime.persistence.object_store import ObjectStore
        object_store = ObjectStore(
            endpoint=config.S3_ENDPOINT,
            bucket=config.S3_BUCKET,
            access_key=config.S3_ACCESS_KEY,
            secret_key=config.S3_SECRET_KEY,
            region=config.S3_REGION,
            presign_ttl=config.PRESIGN_TTL_SECONDS,
        )
    return object_store


def get_pipeline():
    global pipeline
    if pipeline is None:
        from composition.distributor import Distributor, EmailNotifier
        from composition.mosaic_pipeline import CompositionPipeline
        store = get_object_store()
        notifier = EmailNotifier() if config.SMTP_HOST else None
        pipeline = CompositionPipeline(
            object_store=store,
            distributor=Distributor(object_store=store, notifier=notifier),
        )
    return pipeline


@app.get("/health")
async def health():
    """Minimal health check - no deps."""
    return {"status": "ok", "service": "boogie-square"}


# -----------------------------
# Grid state
# -----------------------------

@app.get("/grid")
def get_current_grid():
    backend = get_grid_backend()
    try:
        generation_id = backend.current_generation()
    except BoogieError as e:
        raise HTTPException(status_code=503, detail=str(e))
    if not generation_id:
        raise HTTPException(status_code=404, detail="No current grid")
    return backend.load_grid(generation_id).to_dict()


@app.get("/grid/{generation_id}")
def get_grid(generation_id: str):
    return get_grid_backend().load_grid(generation_id).to_dict()


@app.put("/grid/{generation_id}")
def put_grid(generation_id: str, payload: Dict[str, Any] = Body(...)):
    data = dict(payload)
    data.setdefault("generationId", generation_id)
    if data["generationId"] != generation_id:
        raise HTTPException(status_code=400, detail="generationId does not match the path")
    try:
        grid = Grid.from_dict(data)
    except (ValidationError, ValueError, TypeError, KeyError, AttributeError) as e:
        raise HTTPException(status_code=400, detail=f"Invalid grid: {e}")

    if not get_grid_backend().save_grid(generation_id, grid):
        raise HTTPException(status_code=500, detail="Failed to save grid")
    return grid.to_dict()


@app.get("/grids/completed")
def list_completed_grids(limit: int = 20):
    return {"grids": get_grid_backend().list_completed(limit)}


# -----------------------------
# Media
# -----------------------------

@app.post("/upload")
async def upload_media(request: Request):
    """Accept a raw recording body and return a reference for it."""
    body = await request.body()
    if not body:
        raise HTTPException(status_code=400, detail="Empty body")

    content_type = request.headers.get("content-type", "video/webm")
    filename = f"video_{datetime.now().strftime('%Y%m%dT%H%M%S%f')}.webm"
    store = get_object_store()
    if store is not None:
        key = f"{config.MEDIA_KEY_PREFIX}/{filename}"
        try:
            await asyncio.to_thread(store.upload_bytes, body, key, content_type)
            return {"url": key}
        except UploadFailure as e:
            logger.warning(f"Upload to storage failed, keeping local copy: {e}")

    uploads = Path(config.OUTPUT_DIR) / "uploads"
    uploads.mkdir(parents=True, exist_ok=True)
    (uploads / filename).write_bytes(body)
    return {"url": f"{config.PUBLIC_BASE_URL.rstrip('/')}/outputs/uploads/{filename}"}


@app.post("/merge-takes")
async def merge_takes(background_tasks: BackgroundTasks, files: List[UploadFile] = File(...)):
    if len(files) != 3:
        raise HTTPException(status_code=400, detail=f"Exactly 3 takes required, got {len(files)}")

    work_dir = Path(tempfile.mkdtemp(prefix="merge_"))
    try:
        paths = []
        for n, upload in enumerate(files, start=1):
            suffix = os.path.splitext(upload.filename or "")[1] or ".webm"
            path = work_dir / f"take{n}{suffix}"
            path.write_bytes(await upload.read())
            paths.append(path)

        merged = await asyncio.to_thread(get_pipeline().merge_files, paths, work_dir)
    except ValidationError as e:
        shutil.rmtree(work_dir, ignore_errors=True)
        raise HTTPException(status_code=400, detail=str(e))
    except TranscodeFailure as e:
        shutil.rmtree(work_dir, ignore_errors=True)
        logger.error(f"merge-takes failed: {e}")
        raise HTTPException(status_code=500, detail="Merge failed")

    # Inputs and the merged file go once the response has been sent.
    background_tasks.add_task(shutil.rmtree, work_dir, ignore_errors=True)
    return FileResponse(str(merged), media_type="video/mp4", filename=Path(merged).name)


@app.post("/finalize")
def finalize(payload: Dict[str, Any] = Body(...)):
    videos = payload.get("videos")
    recipients = payload.get("recipients") or []
    if not isinstance(recipients, list) or not all(isinstance(r, str) for r in recipients):
        raise HTTPException(status_code=400, detail="recipients must be a list of emails")

    try:
        result = get_pipeline().finalize(videos, recipients)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except TranscodeFailure as e:
        logger.error(f"finalize failed: {e}")
        raise HTTPException(status_code=500, detail="Mosaic composition failed")

    return {"url": result.url}
