import logging
import time
from pathlib import Path
from typing import Iterable, List, Optional

import structlog

from .config import settings

logger = logging.getLogger("viralclips.sweeper")
struct_logger = structlog.get_logger("viralclips")


def sweep(directories: Iterable[Path], max_age_seconds: Optional[float]) -> int:
    """Delete files older than ``max_age_seconds`` from each directory.

    Directories are scanned non-recursively. ``max_age_seconds=None`` deletes
    every file regardless of age. Entries that fail to stat or unlink are
    logged and skipped.
    """
    cutoff = None if max_age_seconds is None else time.time() - max_age_seconds
    deleted_count = 0
    for directory in directories:
        directory = Path(directory)
        try:
            entries: List[Path] = list(directory.iterdir())
        except FileNotFoundError:
            continue
        except OSError as exc:
            logger.warning("Failed to scan directory %s: %s", directory, exc)
            continue

        for entry in entries:
            try:
                if not entry.is_file():
                    continue
                if cutoff is not None and entry.stat().st_mtime >= cutoff:
                    continue
                entry.unlink()
                deleted_count += 1
            except FileNotFoundError:
                continue
            except OSError as exc:
                logger.warning("Failed to delete expired file %s: %s", entry, exc)

    if deleted_count > 0:
        struct_logger.info(
            "sweep_finished",
            deleted=deleted_count,
            max_age_seconds=max_age_seconds,
        )
    return deleted_count


def sweep_expired() -> int:
    return sweep(settings.scratch_dirs(), settings.RETENTION_HOURS * 3600)


def purge_scratch() -> int:
    """Empty the upload and temp directories; run at shutdown."""
    deleted = sweep([settings.UPLOADS_DIR, settings.TEMP_DIR], None)
    logger.info("Shutdown cleanup removed %s scratch files", deleted)
    return deleted
