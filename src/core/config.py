"""
Configuration for the ClawControl governor core.
Values are read from the environment (and an optional .env file) once at import.
"""

import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

# Persistence
DB_PATH = os.getenv("DB_PATH", "./data/clawcontrol.db")
REPOSITORY_BACKEND = os.getenv("REPOSITORY_BACKEND", "sqlite")  # sqlite|memory

DEBUG = os.getenv("DEBUG", "false").lower() == "true"

# Dispatch loop (manager)
DISPATCH_ENABLED = os.getenv("DISPATCH_ENABLED", "false").lower() == "true"
DISPATCH_INTERVAL_SEC = int(os.getenv("DISPATCH_INTERVAL_SEC", "1200"))  # 20 minutes
DISPATCH_DEFAULT_LIMIT = int(os.getenv("DISPATCH_DEFAULT_LIMIT", "25"))
DISPATCH_MAX_LIMIT = int(os.getenv("DISPATCH_MAX_LIMIT", "100"))
DISPATCH_LEASE_TTL_SEC = int(os.getenv("DISPATCH_LEASE_TTL_SEC", "300"))
DISPATCH_WAIT_SEC = float(os.getenv("DISPATCH_WAIT_SEC", "0"))

# Workflow engine
CLAIM_TTL_SEC = int(os.getenv("CLAIM_TTL_SEC", "900"))  # 15 minutes
STALE_OPERATION_SEC = int(os.getenv("STALE_OPERATION_SEC", "3600"))
STALE_RECOVERY_INTERVAL_SEC = int(os.getenv("STALE_RECOVERY_INTERVAL_SEC", "300"))
MAX_STALE_RETRIES = int(os.getenv("MAX_STALE_RETRIES", "2"))
MAX_STORY_RETRIES = int(os.getenv("MAX_STORY_RETRIES", "2"))  # per story in a loop stage
DEFAULT_MAX_ITERATIONS = int(os.getenv("DEFAULT_MAX_ITERATIONS", "2"))

# Agent runtime (gateway)
RUNTIME_PROVIDER = os.getenv("RUNTIME_PROVIDER", "mock")  # mock|http
RUNTIME_URL = os.getenv("RUNTIME_URL", "http://127.0.0.1:18789")
RUNTIME_TIMEOUT_SEC = float(os.getenv("RUNTIME_TIMEOUT_SEC", "120"))
RUNTIME_STREAM_DEADLINE_SEC = float(os.getenv("RUNTIME_STREAM_DEADLINE_SEC", "600"))  # whole streamed reply
RUNTIME_DEGRADED_MS = int(os.getenv("RUNTIME_DEGRADED_MS", "30000"))

MANAGER_ACTOR = "system:manager"

VERSION = "1.0.0"


def debug_enabled():
    """Check if debug mode is enabled."""
    return os.getenv("DEBUG", "false").lower() == "true"


def ensure_db_directory(db_path=None):
    """Ensure the database directory exists. In-memory databases need none."""
    path = db_path or DB_PATH
    if path != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)


def is_dispatch_enabled():
    """Check if the periodic dispatch trigger may run."""
    return DISPATCH_ENABLED


def get_dispatch_interval():
    """Get dispatch loop interval in seconds."""
    return DISPATCH_INTERVAL_SEC


def clamp_dispatch_limit(limit=None):
    """Clamp a requested scan limit into [1, DISPATCH_MAX_LIMIT]."""
    if limit is None:
        limit = DISPATCH_DEFAULT_LIMIT
    return max(1, min(int(limit), DISPATCH_MAX_LIMIT))


def validate_dispatch_config():
    """Validate dispatch configuration and return any issues."""
    issues = []

    if DISPATCH_INTERVAL_SEC < 1:
        issues.append("DISPATCH_INTERVAL_SEC must be >= 1")

    if DISPATCH_DEFAULT_LIMIT < 1 or DISPATCH_DEFAULT_LIMIT > DISPATCH_MAX_LIMIT:
        issues.append(f"DISPATCH_DEFAULT_LIMIT must be between 1 and {DISPATCH_MAX_LIMIT}")

    if DISPATCH_LEASE_TTL_SEC < 1:
        issues.append("DISPATCH_LEASE_TTL_SEC must be >= 1")

    if RUNTIME_PROVIDER not in ["mock", "http"]:
        issues.append(f"Invalid RUNTIME_PROVIDER: {RUNTIME_PROVIDER}")

    if REPOSITORY_BACKEND not in ["sqlite", "memory"]:
        issues.append(f"Invalid REPOSITORY_BACKEND: {REPOSITORY_BACKEND}")

    if RUNTIME_TIMEOUT_SEC <= 0:
        issues.append("RUNTIME_TIMEOUT_SEC must be > 0")

    if RUNTIME_STREAM_DEADLINE_SEC <= 0:
        issues.append("RUNTIME_STREAM_DEADLINE_SEC must be > 0")

    return issues
