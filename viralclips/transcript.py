import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from openai import OpenAI, OpenAIError

from .config import settings
from .errors import ServiceUnavailable, TranscriptionFailed
from .subtitles import segments_to_srt

logger = logging.getLogger("viralclips.transcript")

DEFAULT_SEGMENT_CONFIDENCE = 0.8


@dataclass
class Transcript:
    text: str
    segments: List[Dict[str, Any]] = field(default_factory=list)
    language: Optional[str] = None
    duration: Optional[float] = None
    confidence: int = 0

    def to_srt(self) -> str:
        return segments_to_srt(self.segments)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "segments": self.segments,
            "language": self.language,
            "duration": self.duration,
            "confidence": self.confidence,
        }


def calculate_confidence(segments: List[Dict[str, Any]]) -> int:
    if not segments:
        return 0
    total = sum(segment.get("confidence") or DEFAULT_SEGMENT_CONFIDENCE for segment in segments)
    return round(total / len(segments) * 100)


def _segment_dict(segment: Any) -> Dict[str, Any]:
    if isinstance(segment, dict):
        return dict(segment)
    if hasattr(segment, "model_dump"):
        return segment.model_dump()
    return {
        "start": getattr(segment, "start", 0.0),
        "end": getattr(segment, "end", 0.0),
        "text": getattr(segment, "text", ""),
    }


def _make_client() -> OpenAI:
    return OpenAI(api_key=settings.OPENAI_API_KEY)


def _transcribe(path: Path, language: str) -> Any:
    client = _make_client()
    with path.open("rb") as media:
        return client.audio.transcriptions.create(
            file=media,
            model=settings.TRANSCRIBE_MODEL,
            language=language,
            response_format="verbose_json",
            timestamp_granularities=["segment"],
            temperature=0.2,
        )


async def generate_transcript(path: Path, language: str = "en") -> Transcript:
    if not settings.OPENAI_API_KEY:
        raise ServiceUnavailable("Transcription is not configured (OPENAI_API_KEY is unset)")
    logger.info("Transcribing %s (language=%s)", path.name, language)
    try:
        response = await asyncio.to_thread(_transcribe, path, language)
    except OpenAIError as exc:
        logger.error("Transcript generation failed for %s: %s", path.name, exc)
        raise TranscriptionFailed(f"Transcript failed: {exc}") from exc

    segments = [_segment_dict(segment) for segment in (getattr(response, "segments", None) or [])]
    return Transcript(
        text=getattr(response, "text", "") or "",
        segments=segments,
        language=getattr(response, "language", None) or language,
        duration=getattr(response, "duration", None),
        confidence=calculate_confidence(segments),
    )
