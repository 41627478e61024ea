import os
import sys
import tempfile
from pathlib import Path

# viralclips.config reads the environment at import time, so point it at a
# throwaway data directory before any test module imports the package.
_BASE = Path(tempfile.mkdtemp(prefix="viralclips-tests-"))

os.environ.update(
    {
        "DATA_DIR": str(_BASE / "data"),
        "LOGS_DIR": str(_BASE / "logs"),
        "MAX_UPLOAD_SIZE_MB": "1",
        "MAX_BODY_SIZE_MB": "1",
        "MAX_CLIP_SECONDS": "300",
        "MAX_CONCURRENT_TRANSCODES": "2",
        "RATE_LIMIT_MAX_REQUESTS": "10",
        "RATE_LIMIT_WINDOW_SECONDS": "900",
        "RETENTION_HOURS": "24",
        "CLEANUP_INTERVAL_SECONDS": "0",
        "OPENAI_API_KEY": "",
    }
)

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))
