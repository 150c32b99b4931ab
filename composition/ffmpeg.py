"""
Thin ffmpeg/ffprobe wrappers.

Every stage of a pipeline run is one blocking ffmpeg invocation. Failures
surface as TranscodeFailure carrying the tail of ffmpeg's stderr.
"""

import json
import logging
import re
import subprocess
from dataclasses import dataclass
from fractions import Fraction
from pathlib import Path
from typing import List, Optional

import config
from runtime.errors import TranscodeFailure

logger = logging.getLogger(__name__)

_TIME_RE = re.compile(r"time=(\d+):(\d+):(\d+(?:\.\d+)?)")


def ffmpeg_path() -> str:
    return config.FFMPEG_PATH


def ffprobe_path() -> str:
    return config.FFPROBE_PATH


@dataclass
class MediaInfo:
    duration: Optional[float]
    fps: Optional[float]
    width: Optional[int]
    height: Optional[int]
    has_audio: bool


def run_ffmpeg(cmd: List[str], output_path: Path) -> Path:
    logger.debug("ffmpeg: %s", " ".join(cmd))
    try:
        subprocess.run(cmd, capture_output=True, text=True, check=True)
    except subprocess.CalledProcessError as e:
        stderr = (e.stderr or "")[-500:]
        logger.error(f"ffmpeg error: {stderr}")
        raise TranscodeFailure(f"ffmpeg failed for {output_path.name}: {stderr}") from e
    except FileNotFoundError as e:
        raise TranscodeFailure(f"ffmpeg not found at {cmd[0]}") from e

    if not output_path.exists():
        raise TranscodeFailure("ffmpeg completed but output file missing")
    return output_path


def _parse_rate(value: Optional[str]) -> Optional[float]:
    if not value or value in ("0/0", "0"):
        return None
    try:
        return float(Fraction(value))
    except (ValueError, ZeroDivisionError):
        return None


def _decoded_duration(path: Path) -> Optional[float]:
    """Decode the whole file to find its length. Browser webm often has no duration header."""
    result = subprocess.run(
        [ffmpeg_path(), "-hide_banner", "-i", str(path), "-f", "null", "-"],
        capture_output=True,
        text=True,
    )
    matches = _TIME_RE.findall(result.stderr or "")
    if not matches:
        return None
    h, m, s = matches[-1]
    return int(h) * 3600 + int(m) * 60 + float(s)


def probe(path: Path) -> MediaInfo:
    cmd = [
        ffprobe_path(),
        "-v", "error",
        "-show_entries", "format=duration:stream=codec_type,avg_frame_rate,r_frame_rate,width,height",
        "-of", "json",
        str(path),
    ]
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, check=True)
        data = json.loads(result.stdout or "{}")
    except (subprocess.CalledProcessError, ValueError, FileNotFoundError) as e:
        raise TranscodeFailure(f"ffprobe failed for {path}: {e}") from e

    streams = data.get("streams", [])
    video = next((s for s in streams if s.get("codec_type") == "video"), None)
    if video is None:
        raise TranscodeFailure(f"no video stream in {path}")

    duration = None
    try:
        duration = float(data.get("format", {}).get("duration"))
    except (TypeError, ValueError):
        duration = _decoded_duration(path)

    return MediaInfo(
        duration=duration,
        fps=_parse_rate(video.get("avg_frame_rate")) or _parse_rate(video.get("r_frame_rate")),
        width=video.get("width"),
        height=video.get("height"),
        has_audio=any(s.get("codec_type") == "audio" for s in streams),
    )
