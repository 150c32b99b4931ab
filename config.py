"""
Central configuration for Boogie Square.
All production values come from environment variables with sensible defaults.
"""

import os


def _env_bool(key: str, default: bool = False) -> bool:
    val = os.getenv(key, "").lower()
    if val in ("true", "1", "yes"):
        return True
    if val in ("false", "0", "no"):
        return False
    return default


def _env_float(key: str, default: float) -> float:
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


def _env_int(key: str, default: int) -> int:
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# ---------------------------------------------------------------------------
# Redis & Queues
# ---------------------------------------------------------------------------
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379")
REDIS_KEY_PREFIX = os.getenv("REDIS_KEY_PREFIX", "boogie")
FINALIZE_JOB_QUEUE = os.getenv("FINALIZE_JOB_QUEUE", "boogie:finalize:jobs")
FINALIZE_RESULT_QUEUE = os.getenv("FINALIZE_RESULT_QUEUE", "boogie:finalize:results")

# ---------------------------------------------------------------------------
# Object storage (S3 / R2)
# ---------------------------------------------------------------------------
S3_ENDPOINT = os.getenv("S3_ENDPOINT")
S3_BUCKET = os.getenv("S3_BUCKET")
S3_ACCESS_KEY = os.getenv("S3_ACCESS_KEY")
S3_SECRET_KEY = os.getenv("S3_SECRET_KEY")
S3_REGION = os.getenv("S3_REGION", "auto")
PRESIGN_TTL_SECONDS = _env_int("PRESIGN_TTL_SECONDS", 3600)
MEDIA_KEY_PREFIX = os.getenv("MEDIA_KEY_PREFIX", "videos")

# ---------------------------------------------------------------------------
# Grid sync & contribution policy
# ---------------------------------------------------------------------------
RECONCILE_INTERVAL_SEC = _env_float("RECONCILE_INTERVAL_SEC", 3.0)

# One active contribution record per email; older entries are removed.
SUPERSEDE_CONTRIBUTIONS = _env_bool("SUPERSEDE_CONTRIBUTIONS", True)
# Reject writes to a second slot (or someone else's slot).
ENFORCE_ONE_SLOT_PER_USER = _env_bool("ENFORCE_ONE_SLOT_PER_USER", True)

# ---------------------------------------------------------------------------
# Playback
# ---------------------------------------------------------------------------
DRIFT_TICK_SEC = _env_float("DRIFT_TICK_SEC", 0.5)
DRIFT_TOLERANCE_SEC = _env_float("DRIFT_TOLERANCE_SEC", 0.25)
TAKE_CYCLE_SEC = _env_float("TAKE_CYCLE_SEC", 4.0)
FALLBACK_START_SEC = _env_float("FALLBACK_START_SEC", 2.0)

# ---------------------------------------------------------------------------
# Composition (ffmpeg)
# ---------------------------------------------------------------------------
FFMPEG_PATH = os.getenv("FFMPEG_PATH", "ffmpeg")
FFPROBE_PATH = os.getenv("FFPROBE_PATH", "ffprobe")
TARGET_FPS = _env_int("TARGET_FPS", 30)
MERGE_WIDTH = _env_int("MERGE_WIDTH", 720)
MERGE_HEIGHT = _env_int("MERGE_HEIGHT", 720)
TILE_WIDTH = _env_int("TILE_WIDTH", 320)
TILE_HEIGHT = _env_int("TILE_HEIGHT", 320)
PIXEL_FORMAT = os.getenv("PIXEL_FORMAT", "yuv420p")
AUDIO_SAMPLE_RATE = _env_int("AUDIO_SAMPLE_RATE", 48000)
AUDIO_CHANNEL_LAYOUT = os.getenv("AUDIO_CHANNEL_LAYOUT", "stereo")
ENCODE_PRESET = os.getenv("ENCODE_PRESET", "veryfast")
ENCODE_CRF = _env_int("ENCODE_CRF", 23)
NORMALIZE_CRF = _env_int("NORMALIZE_CRF", 28)

# ---------------------------------------------------------------------------
# Output & distribution
# ---------------------------------------------------------------------------
OUTPUT_DIR = os.getenv("OUTPUT_DIR", "outputs")
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000")

SMTP_HOST = os.getenv("SMTP_HOST")
SMTP_PORT = _env_int("SMTP_PORT", 587)
SMTP_USER = os.getenv("SMTP_USER")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")
SMTP_USE_TLS = _env_bool("SMTP_USE_TLS", True)
MAIL_FROM = os.getenv("MAIL_FROM", "noreply@boogiesquare.local")
# Files at or above this size are sent as a link only.
ATTACHMENT_MAX_BYTES = _env_int("ATTACHMENT_MAX_BYTES", 20 * 1024 * 1024)
