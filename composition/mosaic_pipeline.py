"""
Mosaic Pipeline

Turns 16 contributed clips into one 4x4 mosaic video.

Pipeline:
1. Fetch every source clip (local path, storage key or URL)
2. Merge full take triads into one clip per slot
3. Normalize each slot clip to a uniform tile
4. Stack tiles row-major: 4 hstacks, then one vstack
5. Distribute (upload + notify)

Each run works in its own temp directory so concurrent runs never share
intermediate files. Any ffmpeg failure aborts the run; no partial mosaic
is ever produced.
"""

import logging
import shutil
import tempfile
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests
from botocore.exceptions import BotoCoreError, ClientError

import config
from composition.distributor import DistributionResult, Distributor
from composition.ffmpeg import MediaInfo, ffmpeg_path, probe, run_ffmpeg
from models.grid import GRID_COLUMNS, SLOT_COUNT, TAKE_COUNT, Grid
from runtime.errors import TranscodeFailure, UploadFailure, ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EncodingProfile:
    fps: int = config.TARGET_FPS
    merge_width: int = config.MERGE_WIDTH
    merge_height: int = config.MERGE_HEIGHT
    tile_width: int = config.TILE_WIDTH
    tile_height: int = config.TILE_HEIGHT
    pixel_format: str = config.PIXEL_FORMAT
    sample_rate: int = config.AUDIO_SAMPLE_RATE
    channel_layout: str = config.AUDIO_CHANNEL_LAYOUT
    preset: str = config.ENCODE_PRESET
    crf: int = config.ENCODE_CRF
    normalize_crf: int = config.NORMALIZE_CRF

    def video_chain(self, width: int, height: int) -> str:
        return (
            f"fps={self.fps},"
            f"scale={width}:{height}:force_original_aspect_ratio=decrease,"
            f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2:color=black,"
            f"setsar=1,format={self.pixel_format}"
        )

    def audio_chain(self) -> str:
        return (
            f"aresample={self.sample_rate},"
            f"aformat=sample_fmts=fltp:channel_layouts={self.channel_layout}"
        )


@dataclass
class FinalizeResult:
    run_id: str
    url: str
    local_path: Path
    distribution: Optional[DistributionResult] = None
    sources: List[List[str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        dist = self.distribution
        return {
            "run_id": self.run_id,
            "url": self.url,
            "local_path": str(self.local_path),
            "uploaded": bool(dist and dist.uploaded),
            "notified": bool(dist and dist.notified),
            "attached": bool(dist and dist.attached),
        }


class CompositionPipeline:
    def __init__(
        self,
        object_store=None,
        distributor: Optional[Distributor] = None,
        profile: Optional[EncodingProfile] = None,
        output_dir: Optional[str] = None,
    ):
        self.object_store = object_store
        self.distributor = distributor or Distributor(object_store=object_store)
        self.profile = profile or EncodingProfile()
        self.output_dir = Path(output_dir or config.OUTPUT_DIR)

    # -----------------------------
    # Fetching
    # -----------------------------

    def fetch(self, ref: str, dest: Path) -> Path:
        """Bring a source clip into the work directory."""
        if not ref:
            raise ValidationError("empty media reference")

        source_path = Path(ref)
        try:
            if not ref.startswith(("http://", "https://", "s3://")) and source_path.exists():
                shutil.copy(str(source_path), str(dest))
            elif self.object_store is not None and self.object_store.key_from_ref(ref) is not None:
                self.object_store.download(ref, dest)
            elif ref.startswith(("http://", "https://")):
                response = requests.get(ref, timeout=60)
                response.raise_for_status()
                dest.write_bytes(response.content)
            else:
                raise TranscodeFailure(f"cannot fetch {ref}: not a file and no object store configured")
        except (requests.RequestException, BotoCoreError, ClientError, UploadFailure, RuntimeError, OSError) as e:
            raise TranscodeFailure(f"could not fetch {ref}: {e}") from e

        if not dest.exists() or dest.stat().st_size == 0:
            raise TranscodeFailure(f"fetched clip is empty: {ref}")
        return dest

    # -----------------------------
    # ffmpeg stages
    # -----------------------------

    def merge_takes(self, takes: List[Path], output_path: Path) -> Path:
        """Concatenate three takes into one clip on a common timebase."""
        if len(takes) != TAKE_COUNT:
            raise ValidationError(f"merge needs exactly {TAKE_COUNT} takes, got {len(takes)}")

        p = self.profile
        infos: List[MediaInfo] = [probe(t) for t in takes]
        inputs: List[str] = []
        for t in takes:
            inputs += ["-i", str(t)]

        filters = []
        silent_index = len(takes)
        for i, info in enumerate(infos):
            filters.append(f"[{i}:v:0]{p.video_chain(p.merge_width, p.merge_height)}[v{i}]")
            if info.has_audio:
                filters.append(f"[{i}:a:0]{p.audio_chain()}[a{i}]")
            else:
                # Silent track the length of the take so concat stays aligned.
                duration = info.duration or 0.1
                inputs += [
                    "-f", "lavfi",
                    "-t", f"{duration:.3f}",
                    "-i", f"anullsrc=r={p.sample_rate}:cl={p.channel_layout}",
                ]
                filters.append(f"[{silent_index}:a]{p.audio_chain()}[a{i}]")
                silent_index += 1
        pairs = "".join(f"[v{i}][a{i}]" for i in range(len(takes)))
        filters.append(f"{pairs}concat=n={len(takes)}:v=1:a=1[v][a]")

        cmd = [
            ffmpeg_path(), "-y",
            *inputs,
            "-filter_complex", ";".join(filters),
            "-map", "[v]", "-map", "[a]",
            "-c:v", "libx264", "-preset", p.preset, "-crf", str(p.crf),
            "-pix_fmt", p.pixel_format, "-r", str(p.fps),
            "-c:a", "aac", "-b:a", "128k", "-ar", str(p.sample_rate),
            "-movflags", "+faststart",
            str(output_path),
        ]
        return run_ffmpeg(cmd, output_path)

    def normalize(self, clip: Path, output_path: Path) -> Path:
        """Re-encode one slot clip to the uniform tile format."""
        p = self.profile
        cmd = [
            ffmpeg_path(), "-y",
            "-i", str(clip),
            "-vf", p.video_chain(p.tile_width, p.tile_height),
            "-an",
            "-c:v", "libx264", "-preset", p.preset, "-crf", str(p.normalize_crf),
            "-pix_fmt", p.pixel_format, "-r", str(p.fps),
            str(output_path),
        ]
        return run_ffmpeg(cmd, output_path)

    def compose_mosaic(self, tiles: List[Path], output_path: Path) -> Path:
        """Stack 16 normalized tiles into a 4x4 grid, row-major."""
        if len(tiles) != SLOT_COUNT:
            raise ValidationError(f"mosaic needs exactly {SLOT_COUNT} tiles, got {len(tiles)}")

        p = self.profile
        inputs: List[str] = []
        for t in tiles:
            inputs += ["-i", str(t)]

        filters = []
        for row in range(GRID_COLUMNS):
            cells = "".join(f"[{row * GRID_COLUMNS + col}:v]" for col in range(GRID_COLUMNS))
            filters.append(f"{cells}hstack=inputs={GRID_COLUMNS}[row{row}]")
        rows = "".join(f"[row{row}]" for row in range(GRID_COLUMNS))
        filters.append(f"{rows}vstack=inputs={GRID_COLUMNS}[out]")

        cmd = [
            ffmpeg_path(), "-y",
            *inputs,
            "-filter_complex", ";".join(filters),
            "-map", "[out]",
            "-an",
            "-c:v", "libx264", "-preset", p.preset, "-crf", str(p.crf),
            "-pix_fmt", p.pixel_format, "-r", str(p.fps),
            "-movflags", "+faststart",
            str(output_path),
        ]
        return run_ffmpeg(cmd, output_path)

    # -----------------------------
    # Runs
    # -----------------------------

    def _slot_clip(self, index: int, refs: List[str], work_dir: Path) -> Path:
        fetched = [
            self.fetch(ref, work_dir / f"slot{index:02d}_src{n}{Path(ref.split('?', 1)[0]).suffix or '.webm'}")
            for n, ref in enumerate(refs)
        ]
        if len(fetched) == TAKE_COUNT:
            return self.merge_takes(fetched, work_dir / f"slot{index:02d}_merged.mp4")
        return fetched[0]

    def _run(self, sources: List[List[str]], recipients: Optional[List[str]]) -> FinalizeResult:
        run_id = uuid.uuid4().hex[:12]
        work_dir = Path(tempfile.mkdtemp(prefix=f"mosaic_{run_id}_"))
        self.output_dir.mkdir(parents=True, exist_ok=True)
        final_path = self.output_dir / f"mosaic_{run_id}.mp4"
        logger.info(f"Mosaic run {run_id}: {len(sources)} slots, work dir {work_dir}")

        try:
            tiles = []
            for index, refs in enumerate(sources):
                clip = self._slot_clip(index, refs, work_dir)
                tiles.append(self.normalize(clip, work_dir / f"tile{index:02d}.mp4"))
            self.compose_mosaic(tiles, final_path)
        except Exception:
            if final_path.exists():
                final_path.unlink()
            raise
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

        logger.info(f"✅ Mosaic composed: {final_path} ({final_path.stat().st_size} bytes)")
        distribution = self.distributor.distribute(final_path, recipients or [])
        return FinalizeResult(
            run_id=run_id,
            url=distribution.url,
            local_path=final_path,
            distribution=distribution,
            sources=sources,
        )

    def finalize(self, refs: List[str], recipients: Optional[List[str]] = None) -> FinalizeResult:
        """Compose exactly 16 slot clips, in slot order, and distribute the result."""
        if not isinstance(refs, list) or len(refs) != SLOT_COUNT:
            count = len(refs) if isinstance(refs, list) else type(refs).__name__
            raise ValidationError(f"finalize needs exactly {SLOT_COUNT} videos, got {count}")
        if not all(isinstance(r, str) and r for r in refs):
            raise ValidationError("every video reference must be a non-empty string")
        return self._run([[r] for r in refs], recipients)

    def run_for_grid(self, grid: Grid, recipients: Optional[List[str]] = None) -> FinalizeResult:
        """Compose a completed grid; slots with all three takes are merged first."""
        if not grid.is_complete:
            raise ValidationError(f"grid {grid.generation_id} has {grid.filled_count}/{SLOT_COUNT} slots filled")
        sources = []
        for slot in grid.slots:
            if slot.takes.complete:
                sources.append([slot.takes.get(n) for n in range(1, TAKE_COUNT + 1)])
            else:
                sources.append([slot.video])
        if recipients is None:
            recipients = grid.contributor_emails()
        return self._run(sources, recipients)

    def merge_files(self, takes: List[Path], output_dir: Optional[Path] = None) -> Path:
        """Merge three already-local takes into a new file under ``output_dir``."""
        target_dir = Path(output_dir) if output_dir else self.output_dir
        target_dir.mkdir(parents=True, exist_ok=True)
        return self.merge_takes(list(takes), target_dir / f"merged_{uuid.uuid4().hex[:12]}.mp4")
