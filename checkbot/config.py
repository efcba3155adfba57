"""Configuration loaded from environment variables (and a local .env file)."""

import os

from dotenv import load_dotenv

load_dotenv()


def _positive(name, default, cast=int):
    raw = os.getenv(name, str(default))
    try:
        value = cast(raw)
    except ValueError:
        raise SystemExit(f"ERROR: {name} must be a number, got {raw!r}")
    if value <= 0:
        raise SystemExit(f"ERROR: {name} must be > 0, got {raw!r}")
    return value


def _flag(name, default):
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# Telegram
TELEGRAM_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN", "")
ALLOWED_USERS = [int(uid.strip()) for uid in os.getenv("TELEGRAM_ALLOWED_USER_IDS", "").split(",") if uid.strip()]
POLL_TIMEOUT_SECONDS = _positive("POLL_TIMEOUT_SECONDS", 30)
POLL_BACKOFF_SECONDS = _positive("POLL_BACKOFF_SECONDS", 5, float)
PERSIST_UPDATE_OFFSET = _flag("PERSIST_UPDATE_OFFSET", "false")

# Verifier ("package.module:attribute")
VERIFIER = os.getenv("CHECKBOT_VERIFIER", "")
VERIFIER_CONCURRENCY = _positive("VERIFIER_CONCURRENCY", 1)

# Storage
DATA_DIR = os.getenv("DATA_DIR", "./data")
STORE_DIR = os.path.join(DATA_DIR, "store")
RESULTS_DIR = os.path.join(DATA_DIR, "results")
LOCK_TIMEOUT_SECONDS = _positive("LOCK_TIMEOUT_SECONDS", 10, float)

# Jobs
MAX_ACTIVE_JOBS = _positive("MAX_ACTIVE_JOBS", 4)
DISPATCH_POLL_INTERVAL = _positive("DISPATCH_POLL_INTERVAL", 1.0, float)
JOB_DEADLINE_SECONDS = _positive("JOB_DEADLINE_SECONDS", 6 * 60 * 60)
SWEEP_INTERVAL_SECONDS = _positive("SWEEP_INTERVAL_SECONDS", 60, float)
CANCEL_ON_REPLACE = _flag("CANCEL_ON_REPLACE", "true")
MAX_UPLOAD_KB = _positive("MAX_UPLOAD_KB", 1024)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
