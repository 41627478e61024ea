import asyncio
import json
import shutil
import sys
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

import structlog
from yt_dlp.version import __version__ as YTDLP_VERSION
from fastapi import APIRouter, FastAPI, File, Form, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from structlog.contextvars import bind_contextvars, clear_contextvars

from .config import settings
from .errors import (
    MissingField,
    MissingInput,
    RateLimited,
    ValidationError,
    ViralClipsError,
)
from .ffmpeg_runner import ffmpeg_snapshot
from .gateway import accept_upload, download_video, fetch_video_info, public_path
from .logging_setup import REQUEST_ID_CTX, configure_logging, flush_logs
from .presets import DEFAULT_PRESET, PRESETS, available_presets
from .ratelimit import RateLimiter
from .sweeper import purge_scratch, sweep_expired
from .transcode import ADMISSION, ProcessingRequest, transcode
from .transcript import generate_transcript

logger = configure_logging(settings)
struct_logger = structlog.get_logger("viralclips")

START_TIME = time.time()
MAX_BATCH_FILES = 10
RATE_LIMITED_PREFIX = "/api"
RATE_LIMITER = RateLimiter(settings.RATE_LIMIT_MAX_REQUESTS, settings.RATE_LIMIT_WINDOW_SECONDS)

AVAILABLE_ENDPOINTS = [
    "GET /api/health",
    "GET /api/presets",
    "POST /api/video-info",
    "POST /api/download-video",
    "POST /api/upload-video",
    "POST /api/process-video",
    "POST /api/batch-process",
    "POST /api/transcribe",
    "DELETE /api/cleanup",
]


async def _periodic_cleanup() -> None:
    """Periodically reclaim scratch files past the retention age."""
    while True:
        try:
            await asyncio.sleep(settings.CLEANUP_INTERVAL_SECONDS)
            await asyncio.to_thread(sweep_expired)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Periodic cleanup failed: %s", exc)


async def _periodic_rate_limiter_cleanup() -> None:
    """Drop rate limit entries whose window has passed."""
    interval = min(300, settings.RATE_LIMIT_WINDOW_SECONDS)
    while True:
        try:
            await asyncio.sleep(interval)
            evicted = RATE_LIMITER.evict_expired()
            if evicted:
                logger.debug("Evicted %s expired rate limit entries", evicted)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Rate limiter cleanup failed: %s", exc)


@asynccontextmanager
async def lifespan(app):
    logger.info("=" * 60)
    logger.info("ViralClips API starting...")
    logger.info("DATA_DIR: %s", settings.DATA_DIR)
    logger.info("LOGS_DIR: %s", settings.LOGS_DIR)
    logger.info("MAX_CONCURRENT_TRANSCODES: %s", settings.MAX_CONCURRENT_TRANSCODES)
    logger.info("=" * 60)
    settings.ensure_dirs()

    tasks = [asyncio.create_task(_periodic_rate_limiter_cleanup())]
    if settings.CLEANUP_INTERVAL_SECONDS > 0:
        tasks.append(asyncio.create_task(_periodic_cleanup()))
    flush_logs()

    try:
        yield
    finally:
        logger.info("Graceful shutdown initiated...")
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except (asyncio.CancelledError, Exception):
                pass
        purge_scratch()
        flush_logs()


app = FastAPI(title="ViralClips API", version="1.0.0", lifespan=lifespan)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or uuid4().hex
    token = REQUEST_ID_CTX.set(request_id)
    bind_contextvars(request_id=request_id)
    try:
        content_type = request.headers.get("content-type", "").split(";", 1)[0].strip().lower()
        declared = request.headers.get("content-length")
        if declared and content_type != "multipart/form-data":
            try:
                too_large = int(declared) > settings.MAX_BODY_BYTES
            except ValueError:
                too_large = False
            if too_large:
                response = JSONResponse(
                    {
                        "error": "payload_too_large",
                        "message": f"Request body exceeds {settings.MAX_BODY_SIZE_MB} MB",
                        "timestamp": datetime.now(timezone.utc).isoformat(),
                    },
                    status_code=413,
                )
                response.headers["X-Request-ID"] = request_id
                return response

        decision = None
        if request.method != "OPTIONS" and request.url.path.startswith(RATE_LIMITED_PREFIX):
            identifier = request.client.host if request.client and request.client.host else "unknown"
            decision = RATE_LIMITER.check_and_increment(identifier)
            if not decision.allowed:
                struct_logger.info("rate_limited", client=identifier, path=request.url.path)
                exc = RateLimited("Too many requests. Please try again later", reset_at=decision.reset_at)
                response = JSONResponse(exc.to_dict(), status_code=exc.status_code)
                response.headers["Retry-After"] = str(max(int(decision.reset_at - time.time()), 0) + 1)
                response.headers["X-RateLimit-Limit"] = str(RATE_LIMITER.max_requests)
                response.headers["X-RateLimit-Remaining"] = "0"
                response.headers["X-Request-ID"] = request_id
                return response

        response = await call_next(request)
        if decision is not None:
            response.headers["X-RateLimit-Limit"] = str(RATE_LIMITER.max_requests)
            response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
        response.headers.setdefault("X-Request-ID", request_id)
        return response
    finally:
        clear_contextvars()
        REQUEST_ID_CTX.reset(token)


@app.middleware("http")
async def security_headers_middleware(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    return response


# outermost: preflights never reach the rate limiter and early 413/429
# responses carry CORS headers
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ViralClipsError)
async def viralclips_error_handler(request: Request, exc: ViralClipsError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.details or "-")
    else:
        logger.warning("%s %s rejected: %s", request.method, request.url.path, exc.message)
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    problems = "; ".join(
        f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg')}"
        for error in exc.errors()
    )
    error = ValidationError("Invalid request", details=problems)
    return JSONResponse(error.to_dict(), status_code=error.status_code)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    timestamp = datetime.now(timezone.utc).isoformat()
    if exc.status_code == 404:
        return JSONResponse(
            {
                "error": "Endpoint not found",
                "message": f"Cannot {request.method} {request.url.path}",
                "availableEndpoints": AVAILABLE_ENDPOINTS,
                "timestamp": timestamp,
            },
            status_code=404,
        )
    return JSONResponse(
        {"error": str(exc.detail), "timestamp": timestamp},
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Server error on %s %s", request.method, request.url.path)
    flush_logs()
    return JSONResponse(
        {
            "error": "Internal server error",
            "message": "An unexpected error occurred",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
        status_code=500,
    )


def disk_snapshot() -> Dict[str, Any]:
    try:
        usage = shutil.disk_usage(settings.DATA_DIR)
    except OSError as exc:
        return {"status": "unavailable", "error": str(exc)}
    return {
        "status": "available",
        "total_mb": usage.total / (1024 * 1024),
        "used_mb": usage.used / (1024 * 1024),
        "available_mb": usage.free / (1024 * 1024),
    }


def memory_snapshot() -> Dict[str, Optional[float]]:
    """Peak resident memory of this worker, in MB."""
    try:
        import resource
    except ImportError:
        return {"rss_mb": None}
    peak = float(resource.getrusage(resource.RUSAGE_SELF).ru_maxrss)
    # ru_maxrss is bytes on macOS, kilobytes elsewhere
    divisor = 1024.0 * 1024.0 if sys.platform == "darwin" else 1024.0
    return {"rss_mb": round(peak / divisor, 1)}


def _count_files(directory: Path) -> int:
    try:
        return sum(1 for entry in directory.iterdir() if entry.is_file())
    except OSError:
        return 0


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _media_response(source) -> Dict[str, Any]:
    return {
        "success": True,
        "videoPath": source.public_path,
        "fileSize": source.size_bytes,
        "metadata": source.metadata,
    }


def _build_processing_request(input_path: Path, **fields: Any) -> ProcessingRequest:
    try:
        return ProcessingRequest(input_path=input_path, **fields)
    except PydanticValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg')}"
            for error in exc.errors()
        )
        raise ValidationError("Invalid processing parameters", details=problems) from exc


def _parse_clip_definitions(raw: Optional[List[str]]) -> List[Dict[str, Any]]:
    """Clips arrive as one JSON string per file, or as a single JSON list."""
    clips: List[Dict[str, Any]] = []
    for entry in raw or []:
        try:
            parsed = json.loads(entry) if isinstance(entry, str) else entry
        except json.JSONDecodeError as exc:
            raise ValidationError("Invalid clip definition", details=str(exc)) from exc
        items = parsed if isinstance(parsed, list) else [parsed]
        for item in items:
            if not isinstance(item, dict):
                raise ValidationError("Invalid clip definition", details="each clip must be a JSON object")
            clips.append(item)
    return clips


class VideoUrlRequest(BaseModel):
    url: Optional[str] = None
    quality: Optional[str] = None


router = APIRouter(prefix="/api")


@router.get("/health")
def health():
    ffmpeg_info = ffmpeg_snapshot()
    disk = disk_snapshot()
    return {
        "status": "OK",
        "timestamp": _now_iso(),
        "uptime": time.time() - START_TIME,
        "memory": memory_snapshot(),
        "services": {
            "ytdl": {"available": True, "version": YTDLP_VERSION},
            "ffmpeg": ffmpeg_info,
            "storage": disk,
            "transcription": {"available": bool(settings.OPENAI_API_KEY)},
        },
        "stats": {
            "videosProcessed": _count_files(settings.PROCESSED_DIR),
            "activeTranscodes": ADMISSION.active,
            "transcodeSlots": ADMISSION.limit,
        },
    }


@router.get("/presets")
def list_presets():
    return {
        "default": DEFAULT_PRESET,
        "presets": [PRESETS[name].to_dict() for name in available_presets()],
    }


@router.post("/video-info")
async def video_info(body: VideoUrlRequest):
    if not body.url:
        raise MissingField("URL is required")
    info = await fetch_video_info(body.url)
    return {"success": True, "info": info}


@router.post("/download-video")
async def download(body: VideoUrlRequest):
    if not body.url:
        raise MissingField("URL is required")
    source = await download_video(body.url, body.quality)
    logger.info("Download complete: %s (%s bytes)", source.local_path.name, source.size_bytes)
    return _media_response(source)


@router.post("/upload-video")
async def upload_video(video: Optional[UploadFile] = File(None)):
    if video is None:
        raise MissingInput("No video file provided")
    source = await accept_upload(video, probe=True)
    return _media_response(source)


@router.post("/process-video")
async def process_video(
    video: Optional[UploadFile] = File(None),
    startTime: str = Form("0"),
    endTime: str = Form("30"),
    addSubtitles: str = Form("false"),
    subtitleText: str = Form(""),
    preset: str = Form("tiktok"),
    enhanceAudio: str = Form("false"),
):
    if video is None:
        raise MissingInput("No video file provided")
    source = await accept_upload(video)
    try:
        req = _build_processing_request(
            source.local_path,
            start_time=startTime,
            end_time=endTime,
            add_subtitles=addSubtitles,
            subtitle_text=subtitleText,
            preset=preset,
            enhance_audio=enhanceAudio,
        )
        logger.info("Processing video %s with settings %s", source.local_path.name, req.model_dump(exclude={"input_path"}))
        result = await transcode(req)
    finally:
        source.local_path.unlink(missing_ok=True)

    return {
        "success": True,
        "processedVideoPath": public_path(result.output_path),
        "fileSize": result.file_size,
        "processingTimeMs": result.processing_time_ms,
        "settings": result.settings,
    }


async def _process_batch_item(upload: UploadFile, clip: Dict[str, Any]) -> Dict[str, Any]:
    name = upload.filename or "video"
    source = None
    try:
        source = await accept_upload(upload)
        try:
            req = ProcessingRequest.from_clip(source.local_path, clip)
        except (PydanticValidationError, TypeError, ValueError) as exc:
            raise ValidationError("Invalid clip definition", details=str(exc)) from exc
        result = await transcode(req, output_prefix="batch")
        return {
            "success": True,
            "file": name,
            "processedVideoPath": public_path(result.output_path),
            "fileSize": result.file_size,
            "settings": result.settings,
        }
    except ViralClipsError as exc:
        logger.error("Failed to process %s: %s", name, exc.message)
        return {"success": False, "file": name, "error": exc.message, "details": exc.details}
    except Exception as exc:
        logger.exception("Failed to process %s", name)
        return {"success": False, "file": name, "error": str(exc)}
    finally:
        if source is not None:
            source.local_path.unlink(missing_ok=True)


@router.post("/batch-process")
async def batch_process(
    videos: Optional[List[UploadFile]] = File(None),
    clips: Optional[List[str]] = Form(None),
):
    if not videos:
        raise MissingInput("No video files provided")
    if len(videos) > MAX_BATCH_FILES:
        raise ValidationError(f"A batch can contain at most {MAX_BATCH_FILES} videos")
    definitions = _parse_clip_definitions(clips)
    logger.info("Batch processing %s videos", len(videos))

    results = await asyncio.gather(
        *(
            _process_batch_item(upload, definitions[index] if index < len(definitions) else {})
            for index, upload in enumerate(videos)
        )
    )
    processed = sum(1 for item in results if item["success"])
    return {
        "success": True,
        "processed": processed,
        "failed": len(results) - processed,
        "results": list(results),
    }


@router.post("/transcribe")
async def transcribe(
    video: Optional[UploadFile] = File(None),
    language: str = Form("en"),
):
    if video is None:
        raise MissingInput("No video file provided")
    source = await accept_upload(video)
    try:
        transcript = await generate_transcript(source.local_path, language=language)
    finally:
        source.local_path.unlink(missing_ok=True)
    return {"success": True, "transcript": transcript.to_dict(), "srt": transcript.to_srt()}


@router.delete("/cleanup")
def cleanup():
    deleted = sweep_expired()
    return {
        "success": True,
        "filesDeleted": deleted,
        "message": f"Cleaned up {deleted} old files",
        "timestamp": _now_iso(),
    }


app.include_router(router)

for _mount in (settings.DOWNLOADS_DIR, settings.PROCESSED_DIR, settings.UPLOADS_DIR):
    app.mount(f"/{_mount.name}", StaticFiles(directory=str(_mount), check_dir=False), name=_mount.name)


def run() -> None:
    import uvicorn

    uvicorn.run(app, host=settings.HOST, port=settings.PORT)


if __name__ == "__main__":
    run()
