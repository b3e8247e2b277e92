# ilovevideo/config.py
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, "") or default)
    except ValueError:
        return default


# ------------ Paths ------------
APP_DIR = Path(__file__).resolve().parent
DATA_DIR = Path(os.getenv("DATA_DIR", str(APP_DIR / ".." / "data"))).resolve()
UPLOAD_DIR = DATA_DIR / "uploads"
OUTPUT_DIR = DATA_DIR / "outputs"
USAGE_FILE = Path(os.getenv("USAGE_FILE", str(DATA_DIR / "usage.json")))
for p in (DATA_DIR, UPLOAD_DIR, OUTPUT_DIR):
    p.mkdir(parents=True, exist_ok=True)

# ffmpeg on PATH unless pinned (e.g. a build step that drops it in ./bin)
FFMPEG = os.getenv("FFMPEG_BIN", "ffmpeg")
FFMPEG_ULIMITS = _env_flag("FFMPEG_ULIMITS", True)

# ------------ Quota / limits ------------
GUEST_LIMIT = _env_int("GUEST_LIMIT", 3)
USER_LIMIT = _env_int("USER_LIMIT", 10)
MAX_UPLOAD_MB = _env_int("MAX_UPLOAD_MB", 500)
# 0 keeps spawning unbounded
MAX_CONCURRENT_JOBS = _env_int("MAX_CONCURRENT_JOBS", 0)

RETENTION_INTERVAL_SEC = _env_int("RETENTION_INTERVAL_SEC", 10 * 60)
RETENTION_MAX_AGE_SEC = _env_int("RETENTION_MAX_AGE_SEC", 60 * 60)

# ------------ Collaborators ------------
SUPABASE_URL = os.getenv("SUPABASE_URL", "").rstrip("/")
SUPABASE_SERVICE_KEY = os.getenv("SUPABASE_SERVICE_KEY", "")
PAYSTACK_PUBLIC_KEY = os.getenv("PAYSTACK_PUBLIC_KEY", "")
PAYSTACK_SECRET_KEY = os.getenv("PAYSTACK_SECRET_KEY", "")

CORS_ORIGINS = [
    o.strip()
    for o in os.getenv(
        "CORS_ORIGINS",
        "https://ilovevideo.fun,http://localhost:5173,http://localhost:3000",
    ).split(",")
    if o.strip()
]

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=level or LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
