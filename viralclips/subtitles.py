import logging
import time
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional
from uuid import uuid4

from .errors import SubtitleWriteError

logger = logging.getLogger("viralclips.subtitles")

CAPTION_STYLE = (
    "FontSize=24,PrimaryColour=&Hffffff,OutlineColour=&H000000,"
    "BorderStyle=3,Outline=2,Shadow=1,MarginV=30"
)


class SubtitleArtifact:
    """A caption file owned by exactly one transcode.

    The owner calls ``discard`` once its ffmpeg process has exited; there is no
    timer-based deletion.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._discarded = False

    def discard(self) -> None:
        if self._discarded:
            return
        self._discarded = True
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Failed to remove subtitle file %s: %s", self.path, exc)

    @property
    def discarded(self) -> bool:
        return self._discarded

    def __enter__(self) -> "SubtitleArtifact":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.discard()


def materialize(text: str, directory: Path) -> SubtitleArtifact:
    """Write caption text verbatim to a fresh .srt file in ``directory``."""
    path = directory / f"subtitles_{int(time.time() * 1000)}_{uuid4().hex[:8]}.srt"
    try:
        directory.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
    except OSError as exc:
        logger.error("Failed to write subtitle file %s: %s", path, exc)
        raise SubtitleWriteError("Failed to write subtitle file", details=str(exc)) from exc
    return SubtitleArtifact(path)


def escape_filter_path(path: Path) -> str:
    """Escape a path for use as an ffmpeg filter option value."""
    path_str = Path(path).as_posix()
    if "\n" in path_str or "\r" in path_str:
        raise ValueError(f"Path contains newline characters: {path_str}")
    return path_str.replace("\\", "/").replace(":", "\\:").replace("'", "\\'")


def subtitle_filter(path: Path, style: str = CAPTION_STYLE) -> str:
    return f"subtitles='{escape_filter_path(path)}':force_style='{style}'"


def format_srt_timestamp(seconds: float) -> str:
    millis = int(round(max(seconds, 0.0) * 1000))
    hours, millis = divmod(millis, 3_600_000)
    minutes, millis = divmod(millis, 60_000)
    secs, millis = divmod(millis, 1000)
    return f"{hours:02d}:{minutes:02d}:{secs:02d},{millis:03d}"


def _segment_value(segment: Any, key: str, default: Optional[Any] = None) -> Any:
    if isinstance(segment, Mapping):
        return segment.get(key, default)
    return getattr(segment, key, default)


def segments_to_srt(segments: Iterable[Any]) -> str:
    """Render transcript segments as SRT cues, skipping blank ones."""
    cues = []
    for segment in segments:
        text = str(_segment_value(segment, "text", "") or "").strip()
        if not text:
            continue
        start = float(_segment_value(segment, "start", 0.0) or 0.0)
        end = float(_segment_value(segment, "end", start) or start)
        cues.append(
            f"{len(cues) + 1}\n"
            f"{format_srt_timestamp(start)} --> {format_srt_timestamp(max(end, start))}\n"
            f"{text}\n"
        )
    return "\n".join(cues)
