"""Error taxonomy shared by the gateway, orchestrator and HTTP layer.

Every error carries the HTTP status it maps to, a short machine-readable
``error`` code and a human-readable message. External tool failures also
carry a fixed list of remediation suggestions.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence


class ViralClipsError(Exception):
    status_code = 500
    error = "internal_error"

    def __init__(
        self,
        message: str,
        *,
        details: Optional[str] = None,
        suggestions: Optional[Sequence[str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details
        self.suggestions: List[str] = list(suggestions or [])

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.error, "message": self.message}
        if self.details:
            payload["details"] = self.details
        if self.suggestions:
            payload["suggestions"] = list(self.suggestions)
        payload["timestamp"] = datetime.now(timezone.utc).isoformat()
        return payload


class ValidationError(ViralClipsError):
    status_code = 400
    error = "validation_error"


class MissingInput(ValidationError):
    error = "missing_input"


class MissingField(ValidationError):
    error = "missing_field"


class InvalidRange(ValidationError):
    error = "invalid_range"


class DurationExceeded(ValidationError):
    error = "duration_exceeded"


class PayloadTooLarge(ValidationError):
    status_code = 413
    error = "payload_too_large"


class UnsupportedMediaError(ViralClipsError):
    status_code = 400
    error = "unsupported_media"


class UnsupportedType(UnsupportedMediaError):
    error = "unsupported_type"


class UnsupportedSource(UnsupportedMediaError):
    error = "unsupported_source"


class ExternalToolError(ViralClipsError):
    status_code = 500
    error = "external_tool_error"


class DownloadFailed(ExternalToolError):
    error = "download_failed"


class EmptyDownload(DownloadFailed):
    error = "empty_download"


class TranscodeFailed(ExternalToolError):
    error = "transcode_failed"


class TranscodeTimeout(TranscodeFailed):
    status_code = 504
    error = "transcode_timeout"


class TranscoderUnavailable(TranscodeFailed):
    error = "transcoder_unavailable"


class TranscriptionFailed(ExternalToolError):
    error = "transcription_failed"


class RateLimited(ViralClipsError):
    status_code = 429
    error = "rate_limited"

    def __init__(self, message: str, *, reset_at: float) -> None:
        super().__init__(message)
        self.reset_at = reset_at

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["resetTime"] = datetime.fromtimestamp(self.reset_at, timezone.utc).isoformat()
        return payload


class InternalError(ViralClipsError):
    status_code = 500
    error = "internal_error"


class SubtitleWriteError(InternalError):
    error = "subtitle_write_failed"


class ServiceUnavailable(InternalError):
    status_code = 503
    error = "service_unavailable"


TRANSCODE_SUGGESTIONS = [
    "Check if the video file is corrupted",
    "Try different time ranges",
    "Reduce video quality settings",
]

DOWNLOAD_SUGGESTIONS = [
    "Check if the URL is accessible",
    "Try a different video quality",
    "Ensure the video is not private or restricted",
]
