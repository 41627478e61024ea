import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()


@dataclass
class Settings:
    HOST: str
    PORT: int
    CORS_ORIGINS: List[str]
    DATA_DIR: Path
    LOGS_DIR: Path
    MAX_UPLOAD_SIZE_MB: int
    MAX_BODY_SIZE_MB: int
    UPLOAD_CHUNK_SIZE: int
    MAX_CLIP_SECONDS: float
    FFMPEG_TIMEOUT_SECONDS: int
    MAX_CONCURRENT_TRANSCODES: int
    DOWNLOAD_RETRIES: int
    RATE_LIMIT_MAX_REQUESTS: int
    RATE_LIMIT_WINDOW_SECONDS: int
    RETENTION_HOURS: float
    CLEANUP_INTERVAL_SECONDS: int
    OPENAI_API_KEY: Optional[str]
    TRANSCRIBE_MODEL: str
    LOG_LEVEL: str

    @classmethod
    def load(cls) -> "Settings":
        def env_path(name: str, default: str) -> Path:
            return Path(os.getenv(name, default))

        def env_int(name: str, default: int) -> int:
            return int(os.getenv(name, str(default)))

        def env_float(name: str, default: float) -> float:
            return float(os.getenv(name, str(default)))

        data_dir = env_path("DATA_DIR", "./data")

        origins = [
            origin.strip()
            for origin in os.getenv(
                "FRONTEND_URL", "http://localhost:3000,https://rajjak2004.github.io"
            ).split(",")
            if origin.strip()
        ]

        max_clip = env_float("MAX_CLIP_SECONDS", 300)
        if max_clip <= 0:
            raise ValueError("MAX_CLIP_SECONDS must be > 0")

        workers = env_int("MAX_CONCURRENT_TRANSCODES", 2)
        if workers < 1:
            raise ValueError("MAX_CONCURRENT_TRANSCODES must be >= 1")

        max_requests = env_int("RATE_LIMIT_MAX_REQUESTS", 10)
        if max_requests < 1:
            raise ValueError("RATE_LIMIT_MAX_REQUESTS must be >= 1")

        window = env_int("RATE_LIMIT_WINDOW_SECONDS", 15 * 60)
        if window < 1:
            raise ValueError("RATE_LIMIT_WINDOW_SECONDS must be >= 1")

        timeout = env_int("FFMPEG_TIMEOUT_SECONDS", 30 * 60)
        if timeout < 1:
            raise ValueError("FFMPEG_TIMEOUT_SECONDS must be >= 1")

        return cls(
            HOST=os.getenv("HOST", "0.0.0.0"),
            PORT=env_int("PORT", 5000),
            CORS_ORIGINS=origins,
            DATA_DIR=data_dir,
            LOGS_DIR=env_path("LOGS_DIR", str(data_dir / "logs")),
            MAX_UPLOAD_SIZE_MB=env_int("MAX_UPLOAD_SIZE_MB", 2048),
            MAX_BODY_SIZE_MB=env_int("MAX_BODY_SIZE_MB", 50),
            UPLOAD_CHUNK_SIZE=env_int("UPLOAD_CHUNK_SIZE", 1024 * 1024),
            MAX_CLIP_SECONDS=max_clip,
            FFMPEG_TIMEOUT_SECONDS=timeout,
            MAX_CONCURRENT_TRANSCODES=workers,
            DOWNLOAD_RETRIES=env_int("DOWNLOAD_RETRIES", 3),
            RATE_LIMIT_MAX_REQUESTS=max_requests,
            RATE_LIMIT_WINDOW_SECONDS=window,
            RETENTION_HOURS=env_float("RETENTION_HOURS", 24),
            CLEANUP_INTERVAL_SECONDS=env_int("CLEANUP_INTERVAL_SECONDS", 3600),
            OPENAI_API_KEY=os.getenv("OPENAI_API_KEY") or None,
            TRANSCRIBE_MODEL=os.getenv("TRANSCRIBE_MODEL", "whisper-1"),
            LOG_LEVEL=os.getenv("LOG_LEVEL", "INFO").upper(),
        )

    @property
    def MAX_UPLOAD_BYTES(self) -> int:
        return self.MAX_UPLOAD_SIZE_MB * 1024 * 1024

    @property
    def MAX_BODY_BYTES(self) -> int:
        return self.MAX_BODY_SIZE_MB * 1024 * 1024

    @property
    def UPLOADS_DIR(self) -> Path:
        return self.DATA_DIR / "uploads"

    @property
    def DOWNLOADS_DIR(self) -> Path:
        return self.DATA_DIR / "downloads"

    @property
    def PROCESSED_DIR(self) -> Path:
        return self.DATA_DIR / "processed"

    @property
    def TEMP_DIR(self) -> Path:
        return self.DATA_DIR / "temp"

    def scratch_dirs(self) -> List[Path]:
        """Every directory the retention sweep is allowed to reclaim."""
        return [self.UPLOADS_DIR, self.DOWNLOADS_DIR, self.PROCESSED_DIR, self.TEMP_DIR]

    def ensure_dirs(self) -> None:
        for directory in self.scratch_dirs() + [self.LOGS_DIR]:
            directory.mkdir(parents=True, exist_ok=True)


settings = Settings.load()
settings.DATA_DIR = settings.DATA_DIR.resolve()
settings.LOGS_DIR = settings.LOGS_DIR.resolve()
settings.ensure_dirs()
