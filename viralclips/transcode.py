import asyncio
import io
import logging
import math
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Tuple
from uuid import uuid4

import structlog
from pydantic import BaseModel, ConfigDict, Field

from .config import settings
from .errors import (
    TRANSCODE_SUGGESTIONS,
    DurationExceeded,
    InvalidRange,
    MissingInput,
    TranscodeFailed,
    ViralClipsError,
)
from .ffmpeg_runner import FFmpegProgressParser, run_ffmpeg_with_timeout, tail_text
from .presets import AUDIO_ENHANCEMENT_FILTERS, PresetProfile, resolve_preset
from .subtitles import SubtitleArtifact, materialize, subtitle_filter

logger = logging.getLogger("viralclips.transcode")
struct_logger = structlog.get_logger("viralclips")


class ProcessingRequest(BaseModel):
    model_config = ConfigDict(frozen=True, allow_inf_nan=False)

    input_path: Optional[Path] = None
    start_time: float = Field(0.0, ge=0)
    end_time: float = 30.0
    preset: str = "tiktok"
    add_subtitles: bool = False
    subtitle_text: str = ""
    enhance_audio: bool = False

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time

    @classmethod
    def from_clip(cls, input_path: Path, clip: Mapping[str, Any]) -> "ProcessingRequest":
        """Build a request from a batch clip definition.

        Clips give ``startTime`` and either ``endTime`` or ``duration``.
        """
        start = float(clip.get("startTime", 0) or 0)
        if clip.get("endTime") is not None:
            end = float(clip["endTime"])
        else:
            end = start + float(clip.get("duration", 30) or 30)
        return cls(
            input_path=input_path,
            start_time=start,
            end_time=end,
            preset=clip.get("preset") or "tiktok",
            add_subtitles=clip.get("addSubtitles", False),
            subtitle_text=clip.get("subtitleText") or "",
            enhance_audio=clip.get("enhanceAudio", False),
        )


@dataclass
class TranscodeJob:
    input_path: Path
    output_path: Path
    video_filters: List[str]
    audio_filters: List[str]
    duration: float
    subtitle: Optional[SubtitleArtifact] = None
    progress: float = 0.0
    process: Any = None
    started: float = field(default_factory=time.perf_counter)

    def attach(self, process: Any) -> None:
        self.process = process

    def update_progress(self, percent: float, stats: Dict[str, str]) -> None:
        self.progress = percent
        logger.info("Processing %s: %.1f%% (%s)", self.output_path.name, percent, stats.get("time", "?"))


@dataclass
class TranscodeResult:
    output_path: Path
    file_size: int
    duration: float
    processing_time_ms: int
    settings: Dict[str, Any]


class AdmissionGate:
    """Caps the number of ffmpeg processes running at once."""

    def __init__(self, limit: int) -> None:
        self._limit = max(limit, 1)
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self.active = 0

    @property
    def limit(self) -> int:
        return self._limit

    def _get_semaphore(self) -> asyncio.Semaphore:
        loop = asyncio.get_running_loop()
        if self._semaphore is None or self._loop is not loop:
            self._semaphore = asyncio.Semaphore(self._limit)
            self._loop = loop
        return self._semaphore

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        async with self._get_semaphore():
            self.active += 1
            try:
                yield
            finally:
                self.active -= 1


class InputLocks:
    """One asyncio lock per input file so a file is never transcoded twice at once."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, path: Path) -> AsyncIterator[None]:
        key = str(Path(path).resolve())
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if self._holders[key] <= 0:
                self._holders.pop(key, None)
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


ADMISSION = AdmissionGate(settings.MAX_CONCURRENT_TRANSCODES)
INPUT_LOCKS = InputLocks()


def validate_request(req: ProcessingRequest) -> None:
    if req.input_path is None or not Path(req.input_path).is_file():
        raise MissingInput("No video file provided")
    if not (math.isfinite(req.start_time) and math.isfinite(req.end_time)):
        raise InvalidRange("Invalid time range: startTime and endTime must be finite numbers")
    if req.start_time >= req.end_time:
        raise InvalidRange("Invalid time range: startTime must be less than endTime")
    if req.duration > settings.MAX_CLIP_SECONDS:
        limit = settings.MAX_CLIP_SECONDS
        raise DurationExceeded(
            f"Clip duration cannot exceed {limit / 60:g} minutes ({limit:g} seconds)"
        )


def _seconds(value: float) -> str:
    return f"{value:.3f}".rstrip("0").rstrip(".")


def build_filters(
    req: ProcessingRequest,
    profile: PresetProfile,
    subtitle_path: Optional[Path] = None,
) -> Tuple[List[str], List[str]]:
    video_filters = list(profile.video_filters)
    if subtitle_path is not None:
        video_filters.append(subtitle_filter(subtitle_path))
    audio_filters = list(profile.audio_filters)
    if req.enhance_audio:
        audio_filters.extend(AUDIO_ENHANCEMENT_FILTERS)
    return video_filters, audio_filters


def build_command(
    req: ProcessingRequest,
    profile: PresetProfile,
    output_path: Path,
    subtitle_path: Optional[Path] = None,
) -> List[str]:
    video_filters, audio_filters = build_filters(req, profile, subtitle_path)
    cmd = [
        "ffmpeg",
        "-y",
        "-hide_banner",
        "-ss", _seconds(req.start_time),
        "-i", str(req.input_path),
        "-t", _seconds(req.duration),
        "-c:v", "libx264",
        "-c:a", "aac",
    ]
    if video_filters:
        cmd += ["-vf", ",".join(video_filters)]
    if audio_filters:
        cmd += ["-af", ",".join(audio_filters)]
    cmd += ["-movflags", "+faststart", "-f", "mp4", str(output_path)]
    return cmd


def _remove(path: Optional[Path]) -> None:
    if path is None:
        return
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("Failed to remove %s: %s", path, exc)


async def transcode(
    req: ProcessingRequest,
    *,
    output_dir: Optional[Path] = None,
    temp_dir: Optional[Path] = None,
    output_prefix: str = "processed",
    delete_input: bool = True,
) -> TranscodeResult:
    """Cut, filter and encode one clip.

    On success the input file is deleted and the output's size returned. On
    failure both input and output are removed before the error propagates.
    The subtitle file, if any, is removed in every case.
    """
    validate_request(req)
    output_dir = output_dir or settings.PROCESSED_DIR
    temp_dir = temp_dir or settings.TEMP_DIR
    output_dir.mkdir(parents=True, exist_ok=True)

    profile = resolve_preset(req.preset)
    input_path = Path(req.input_path)
    output_path = output_dir / f"{output_prefix}_{int(time.time() * 1000)}_{uuid4().hex[:6]}_{profile.name}.mp4"

    async with INPUT_LOCKS.hold(input_path):
        if not input_path.is_file():
            raise MissingInput("Input video is no longer available")

        subtitle: Optional[SubtitleArtifact] = None
        job: Optional[TranscodeJob] = None
        try:
            if req.add_subtitles and req.subtitle_text.strip():
                subtitle = materialize(req.subtitle_text, temp_dir)
            video_filters, audio_filters = build_filters(
                req, profile, subtitle.path if subtitle else None
            )
            job = TranscodeJob(
                input_path=input_path,
                output_path=output_path,
                video_filters=video_filters,
                audio_filters=audio_filters,
                duration=req.duration,
                subtitle=subtitle,
            )
            cmd = build_command(req, profile, output_path, subtitle.path if subtitle else None)
            log = io.StringIO()
            parser = FFmpegProgressParser(req.duration, job.update_progress)

            async with ADMISSION.slot():
                struct_logger.info(
                    "transcode_started",
                    input=input_path.name,
                    output=output_path.name,
                    preset=profile.name,
                    duration=req.duration,
                )
                code = await run_ffmpeg_with_timeout(
                    cmd,
                    log,
                    progress_parser=parser,
                    on_start=job.attach,
                )

            if code != 0 or not output_path.exists():
                tail = tail_text(log.getvalue()) or "no output file produced"
                raise TranscodeFailed(
                    f"ffmpeg exited with code {code}: {tail}",
                    suggestions=TRANSCODE_SUGGESTIONS,
                )
        except Exception as exc:
            _remove(output_path)
            if delete_input:
                _remove(input_path)
            logger.error("Video processing failed for %s: %s", input_path.name, exc)
            if isinstance(exc, ViralClipsError):
                raise
            raise TranscodeFailed(
                "Processing setup failed",
                details=str(exc),
                suggestions=TRANSCODE_SUGGESTIONS,
            ) from exc
        finally:
            if subtitle is not None:
                subtitle.discard()

    if delete_input:
        _remove(input_path)

    job.progress = 100.0
    file_size = output_path.stat().st_size
    elapsed_ms = int((time.perf_counter() - job.started) * 1000)
    struct_logger.info(
        "transcode_finished",
        output=output_path.name,
        file_size=file_size,
        processing_time_ms=elapsed_ms,
    )
    return TranscodeResult(
        output_path=output_path,
        file_size=file_size,
        duration=req.duration,
        processing_time_ms=elapsed_ms,
        settings={
            "startTime": req.start_time,
            "endTime": req.end_time,
            "duration": req.duration,
            "preset": profile.name,
            "addSubtitles": req.add_subtitles,
            "enhanceAudio": req.enhance_audio,
        },
    )
