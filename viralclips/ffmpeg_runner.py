import asyncio
import logging
import os
import re
import signal
import subprocess
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .config import settings
from .errors import TRANSCODE_SUGGESTIONS, TranscodeTimeout, TranscoderUnavailable
from .logging_setup import flush_logs

logger = logging.getLogger("viralclips.ffmpeg")

_FFMPEG_VERSION_CACHE: Optional[Dict[str, Any]] = None


class FFmpegProgressParser:
    """Turns ffmpeg ``time=`` stat lines into an approximate percent-complete."""

    _TIME_PATTERN = re.compile(r"time=(\d+):(\d+):(\d+(?:\.\d+)?)")
    _SPEED_PATTERN = re.compile(r"speed=\s*(\d+\.?\d*)x")

    def __init__(self, total_seconds: float, on_progress: Callable[[float, Dict[str, str]], None]) -> None:
        self._total = max(total_seconds, 0.001)
        self._on_progress = on_progress
        self._last_percent = -1.0

    @property
    def last_percent(self) -> float:
        return max(self._last_percent, 0.0)

    def __call__(self, line: str) -> None:
        match = self._TIME_PATTERN.search(line)
        if not match:
            return
        hours, minutes, seconds = match.groups()
        try:
            elapsed = int(hours) * 3600 + int(minutes) * 60 + float(seconds)
        except ValueError:
            return

        percent = min(99.0, (elapsed / self._total) * 100.0)
        if percent <= self._last_percent + 0.5:
            return
        self._last_percent = percent

        stats = {"time": f"{elapsed:.1f}"}
        speed_match = self._SPEED_PATTERN.search(line)
        if speed_match:
            stats["speed"] = speed_match.group(1)
        self._on_progress(percent, stats)


def tail_text(text: str, lines: int = 5) -> str:
    """Return the last ``lines`` non-empty lines of ``text``."""
    kept = [line.strip() for line in text.splitlines() if line.strip()]
    return "\n".join(kept[-lines:])


def _child_setup() -> None:
    signal.signal(signal.SIGTERM, signal.SIG_DFL)


async def _pump_stream(
    stream: Optional[asyncio.StreamReader],
    log_handle,
    progress_parser: Optional[Callable[[str], None]],
) -> None:
    if stream is None:
        return
    buffer = ""
    while True:
        # small reads so \r-terminated stat lines are seen as they arrive
        chunk = await stream.read(1024)
        if not chunk:
            break
        buffer += chunk.decode("utf-8", errors="ignore")
        parts = re.split(r"[\r\n]", buffer)
        buffer = parts[-1]
        for line in parts[:-1]:
            if not line:
                continue
            log_handle.write(line + "\n")
            if progress_parser is not None:
                try:
                    progress_parser(line)
                except Exception as exc:
                    logger.debug("Progress parser failed on line: %s - %s", line[:100], exc)
    if buffer:
        log_handle.write(buffer + "\n")
        if progress_parser is not None:
            progress_parser(buffer)
    log_handle.flush()


async def _cancel_tasks(tasks: List[asyncio.Task]) -> None:
    for task in tasks:
        task.cancel()
    for task in tasks:
        try:
            await task
        except (asyncio.CancelledError, Exception):
            pass


async def run_ffmpeg_with_timeout(
    cmd: List[str],
    log_handle,
    *,
    progress_parser: Optional[Callable[[str], None]] = None,
    on_start: Optional[Callable[[Any], None]] = None,
    timeout: Optional[float] = None,
) -> int:
    """Run ffmpeg without blocking the event loop and return its exit code."""
    limit = timeout if timeout is not None else settings.FFMPEG_TIMEOUT_SECONDS

    subprocess_kwargs: Dict[str, Any] = {
        "stdin": asyncio.subprocess.DEVNULL,
        "stdout": asyncio.subprocess.PIPE,
        "stderr": asyncio.subprocess.PIPE,
    }
    if os.name != "nt":
        subprocess_kwargs["preexec_fn"] = _child_setup

    try:
        proc = await asyncio.create_subprocess_exec(*cmd, **subprocess_kwargs)
    except Exception as exc:
        logger.error("Failed to launch ffmpeg command %s: %s", cmd, exc)
        flush_logs()
        raise TranscoderUnavailable(
            "Failed to start ffmpeg",
            details=str(exc),
            suggestions=TRANSCODE_SUGGESTIONS,
        ) from exc

    logger.info("FFmpeg started: %s", " ".join(cmd))
    if on_start is not None:
        on_start(proc)

    pump_tasks = [
        asyncio.create_task(_pump_stream(proc.stdout, log_handle, None)),
        asyncio.create_task(_pump_stream(proc.stderr, log_handle, progress_parser)),
    ]
    try:
        return_code = await asyncio.wait_for(proc.wait(), timeout=limit)
    except asyncio.TimeoutError:
        logger.error("FFmpeg process timed out after %d seconds for command: %s", limit, " ".join(cmd[:10]))
        proc.terminate()
        try:
            await asyncio.wait_for(proc.wait(), timeout=5)
        except asyncio.TimeoutError:
            proc.kill()
            try:
                await asyncio.wait_for(proc.wait(), timeout=1)
            except asyncio.TimeoutError:
                pass
        await _cancel_tasks(pump_tasks)
        flush_logs()
        raise TranscodeTimeout(
            f"Processing timed out after {limit} seconds",
            suggestions=TRANSCODE_SUGGESTIONS,
        )
    except BaseException:
        await _cancel_tasks(pump_tasks)
        raise

    try:
        await asyncio.wait_for(asyncio.gather(*pump_tasks), timeout=5)
    except asyncio.TimeoutError:
        await _cancel_tasks(pump_tasks)
    return return_code


def ffmpeg_snapshot() -> Dict[str, Any]:
    global _FFMPEG_VERSION_CACHE
    if _FFMPEG_VERSION_CACHE is not None:
        return dict(_FFMPEG_VERSION_CACHE)
    try:
        result = subprocess.run(["ffmpeg", "-version"], capture_output=True, text=True, timeout=5)
        available = result.returncode == 0
        version_line = (result.stdout or "").splitlines()[0] if available and result.stdout else ""
        error = None if available else (result.stderr or "Unknown failure")
    except Exception as exc:
        available = False
        version_line = ""
        error = str(exc)
    snapshot = {"available": available, "version": version_line, "error": error}
    if available:
        _FFMPEG_VERSION_CACHE = dict(snapshot)
    return snapshot


def probe_duration(path: Path) -> Optional[float]:
    """Container duration in seconds via ffprobe, or None when it cannot be read."""
    try:
        result = subprocess.run(
            [
                "ffprobe",
                "-v", "error",
                "-show_entries", "format=duration",
                "-of", "default=nokey=1:noprint_wrappers=1",
                str(path),
            ],
            capture_output=True,
            text=True,
            timeout=30,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        logger.warning("ffprobe failed for %s: %s", path, exc)
        return None
    if result.returncode != 0:
        return None
    try:
        return float((result.stdout or "").strip())
    except ValueError:
        return None
