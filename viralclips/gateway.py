import asyncio
import logging
import random
import re
import string
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import structlog
import yt_dlp
from yt_dlp.utils import DownloadError
from fastapi import UploadFile

from .config import settings
from .errors import (
    DOWNLOAD_SUGGESTIONS,
    DownloadFailed,
    EmptyDownload,
    InternalError,
    PayloadTooLarge,
    UnsupportedSource,
    UnsupportedType,
)
from .ffmpeg_runner import probe_duration
from .logging_setup import flush_logs

logger = logging.getLogger("viralclips.gateway")
struct_logger = structlog.get_logger("viralclips")

ACCEPTED_VIDEO_TYPES = {
    "video/mp4",
    "video/avi",
    "video/mov",
    "video/mkv",
    "video/webm",
    # registered aliases browsers send for the same containers
    "video/quicktime",
    "video/x-msvideo",
    "video/x-matroska",
}

SUPPORTED_DOMAINS = {
    "youtube": ("youtube.com", "youtu.be"),
    "tiktok": ("tiktok.com",),
    "instagram": ("instagram.com",),
    "facebook": ("facebook.com",),
    "vimeo": ("vimeo.com",),
}

DEFAULT_QUALITY = "best[height<=1080]"

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")
_UNSAFE_TITLE_CHARS = re.compile(r"[^a-zA-Z0-9\s_-]")


@dataclass
class MediaSource:
    """A video that is now on local disk, ready for the orchestrator."""

    local_path: Path
    size_bytes: int
    title: str
    duration: Optional[float] = None
    thumbnail: Optional[str] = None
    public_path: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)


def detect_platform(url: Optional[str]) -> Optional[str]:
    if not url or not isinstance(url, str):
        return None
    candidate = url.strip()
    if "://" not in candidate:
        candidate = "https://" + candidate
    try:
        parsed = urlparse(candidate)
        host = (parsed.hostname or "").lower()
    except ValueError:
        return None
    if parsed.scheme.lower() not in {"http", "https"}:
        return None
    for platform, domains in SUPPORTED_DOMAINS.items():
        if any(host == domain or host.endswith("." + domain) for domain in domains):
            return platform
    return None


def ensure_supported_source(url: Optional[str]) -> str:
    if detect_platform(url) is None:
        logger.warning("Rejected unsupported source URL: %s", url)
        raise UnsupportedSource(
            "Unsupported URL. Please use YouTube, TikTok, Instagram, Facebook, or Vimeo URLs."
        )
    return url.strip()


def ensure_upload_type(upload: UploadFile) -> None:
    content_type = (upload.content_type or "").split(";", 1)[0].strip().lower()
    if content_type not in ACCEPTED_VIDEO_TYPES:
        logger.warning("Upload %s rejected due to invalid content-type: %s", upload.filename, content_type or "unknown")
        raise UnsupportedType(
            "Invalid file type. Only video files are allowed.",
            details=f"got {content_type or 'unknown'}",
        )


def safe_filename(name: Optional[str], default: str = "video.mp4") -> str:
    base = Path(name or "").name
    cleaned = _UNSAFE_NAME_CHARS.sub("_", base).strip("._")
    return cleaned[:120] or default


def clean_title(title: Optional[str]) -> str:
    return _UNSAFE_TITLE_CHARS.sub("", title or "")[:100].strip()


def public_path(path: Path) -> str:
    """URL path under which a scratch file is served, e.g. /downloads/x.mp4."""
    return f"/{path.parent.name}/{path.name}"


def _unique_upload_name(filename: Optional[str]) -> str:
    token = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"{int(time.time() * 1000)}-{token}-{safe_filename(filename)}"


async def stream_upload_to_path(upload: UploadFile, dest: Path, max_bytes: Optional[int] = None) -> int:
    limit = settings.MAX_UPLOAD_BYTES if max_bytes is None else max_bytes
    too_large = PayloadTooLarge(f"File too large. Maximum size is {limit // (1024 * 1024)} MB.")

    await upload.seek(0)
    declared = getattr(upload, "size", None)
    if declared is not None and declared > limit:
        logger.warning("Upload %s declared size %s exceeds max bytes %s", upload.filename, declared, limit)
        raise too_large

    dest.parent.mkdir(parents=True, exist_ok=True)
    temp_dest = dest.with_name(dest.name + ".partial")
    total = 0
    try:
        with temp_dest.open("wb") as buffer:
            while True:
                chunk = await upload.read(settings.UPLOAD_CHUNK_SIZE)
                if not chunk:
                    break
                if total + len(chunk) > limit:
                    logger.warning("Upload exceeded max size: %s", upload.filename)
                    flush_logs()
                    raise too_large
                buffer.write(chunk)
                total += len(chunk)
        temp_dest.replace(dest)
    except PayloadTooLarge:
        temp_dest.unlink(missing_ok=True)
        raise
    except OSError as exc:
        temp_dest.unlink(missing_ok=True)
        logger.error("Failed to persist upload %s: %s", upload.filename, exc)
        flush_logs()
        raise InternalError("Failed to save upload", details=str(exc)) from exc
    return total


async def accept_upload(upload: UploadFile, *, probe: bool = False) -> MediaSource:
    """Validate and store an uploaded video in the uploads scratch directory."""
    ensure_upload_type(upload)
    dest = settings.UPLOADS_DIR / _unique_upload_name(upload.filename)
    size = await stream_upload_to_path(upload, dest)
    duration = await asyncio.to_thread(probe_duration, dest) if probe else None
    title = Path(upload.filename or dest.name).stem
    logger.info("Stored upload %s (%s bytes)", dest.name, size)
    return MediaSource(
        local_path=dest,
        size_bytes=size,
        title=title,
        duration=duration,
        public_path=public_path(dest),
        metadata={"title": title, "duration": duration, "originalName": upload.filename},
    )


def _ydl_options(**extra: Any) -> Dict[str, Any]:
    opts: Dict[str, Any] = {
        "quiet": True,
        "no_warnings": True,
        "noplaylist": True,
        "nocheckcertificate": True,
        "socket_timeout": 30,
        "retries": settings.DOWNLOAD_RETRIES,
    }
    opts.update(extra)
    return opts


def _extract_info(url: str) -> Dict[str, Any]:
    with yt_dlp.YoutubeDL(_ydl_options()) as ydl:
        info = ydl.extract_info(url, download=False)
    return ydl.sanitize_info(info) if info else {}


def _run_download(url: str, output_path: Path, quality: str) -> None:
    opts = _ydl_options(
        outtmpl=str(output_path),
        format=quality,
        merge_output_format="mp4",
    )
    with yt_dlp.YoutubeDL(opts) as ydl:
        ydl.download([url])


def _truncate(text: Optional[str], limit: int) -> Optional[str]:
    if text is None:
        return None
    return text[:limit] + "..." if len(text) > limit else text


async def fetch_video_info(url: str) -> Dict[str, Any]:
    url = ensure_supported_source(url)
    logger.info("Getting video info for: %s", url)
    try:
        info = await asyncio.to_thread(_extract_info, url)
    except DownloadError as exc:
        raise DownloadFailed(
            "Failed to get video information",
            details=str(exc),
            suggestions=DOWNLOAD_SUGGESTIONS,
        ) from exc
    return {
        "title": info.get("title"),
        "duration": info.get("duration"),
        "thumbnail": info.get("thumbnail"),
        "description": _truncate(info.get("description"), 500),
        "uploader": info.get("uploader"),
        "viewCount": info.get("view_count"),
        "uploadDate": info.get("upload_date"),
        "formats": len(info.get("formats") or []),
        "resolution": info.get("resolution"),
        "filesize": info.get("filesize"),
        "platform": detect_platform(url),
    }


async def download_video(url: str, quality: Optional[str] = None) -> MediaSource:
    """Retrieve a video from an allow-listed host into the downloads directory."""
    url = ensure_supported_source(url)
    quality = quality or DEFAULT_QUALITY
    logger.info("Downloading video from: %s", url)

    try:
        info = await asyncio.to_thread(_extract_info, url)
        title = info.get("title") or "video"
        output_path = settings.DOWNLOADS_DIR / f"{int(time.time() * 1000)}_{clean_title(title) or 'video'}.mp4"
        await asyncio.to_thread(_run_download, url, output_path, quality)
    except DownloadError as exc:
        logger.error("Download error for %s: %s", url, exc)
        flush_logs()
        raise DownloadFailed("Download failed", details=str(exc), suggestions=DOWNLOAD_SUGGESTIONS) from exc

    if not output_path.exists():
        raise DownloadFailed(
            "Download failed",
            details="Download failed - file not created",
            suggestions=DOWNLOAD_SUGGESTIONS,
        )
    size = output_path.stat().st_size
    if size == 0:
        output_path.unlink(missing_ok=True)
        raise EmptyDownload(
            "Download failed",
            details="Download failed - empty file",
            suggestions=DOWNLOAD_SUGGESTIONS,
        )

    struct_logger.info("download_finished", path=output_path.name, size=size)
    metadata = {
        "title": info.get("title"),
        "duration": info.get("duration"),
        "thumbnail": info.get("thumbnail"),
        "description": (info.get("description") or "")[:200] or None,
        "uploader": info.get("uploader"),
        "viewCount": info.get("view_count"),
        "originalUrl": url,
        "platform": detect_platform(url),
    }
    return MediaSource(
        local_path=output_path,
        size_bytes=size,
        title=title,
        duration=info.get("duration"),
        thumbnail=info.get("thumbnail"),
        public_path=public_path(output_path),
        metadata=metadata,
    )
