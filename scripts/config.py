"""Configuration for the session keeper."""

import logging
import os
import re
import sys
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

load_dotenv(Path(__file__).resolve().parent.parent / ".env")


# Account ids double as run-directory names
ACCOUNT_ID_RE = re.compile(r"^[a-zA-Z0-9._-]+$")

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"


def validate_account_id(account_id: str) -> str | None:
    """Validate an account id. Returns error string or None."""
    if not account_id:
        return "Account id cannot be empty"
    if not ACCOUNT_ID_RE.match(account_id):
        return f"Invalid account id '{account_id}': only [a-zA-Z0-9._-] allowed"
    if account_id in (".", ".."):
        return f"Invalid account id '{account_id}': path traversal not allowed"
    return None


def safe_run_path(base_dir: Path, account_id: str) -> Path | None:
    """Resolve an account's run directory, rejecting traversal attempts."""
    if validate_account_id(account_id):
        return None
    resolved = (base_dir / account_id).resolve()
    if not resolved.is_relative_to(base_dir.resolve()):
        return None
    return resolved


def env_flag(name: str, default: bool | None = None) -> bool | None:
    """Read a boolean environment variable ("1"/"true"/"yes" are true)."""
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "new")


def configure_logging(level: int = logging.INFO) -> None:
    """Route log records to stderr. Safe to call more than once."""
    root = logging.getLogger()
    if root.handlers:
        return
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    root.setLevel(level)


class Config:
    # Target
    ENTRY_URL = os.getenv("SESSION_ENTRY_URL", "https://geturanium.io/")
    AUTH_PATH_PREFIX = "/auth"

    # Browser defaults
    DEFAULT_VIEWPORT = {"width": 1920, "height": 1080}
    DEFAULT_USER_AGENT = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
        "AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/125.0.0.0 Safari/537.36"
    )
    HEADLESS = env_flag("HEADLESS", False)
    CHROME_PATH = os.getenv("CHROME_PATH", "")

    # Persistence paths
    RUNS_DIR = Path(os.getenv("SESSION_RUNS_DIR", "runs"))
    ACCOUNTS_FILE = Path(os.getenv("SESSION_ACCOUNTS_FILE", "accounts.json"))
    PROFILE_DIR_NAME = "browser_profile"
    SCREENSHOT_DIR_NAME = "screenshots"

    # Navigation (ms)
    NAVIGATION_TIMEOUT = 60_000
    LOGIN_WAIT_TIMEOUT = 180_000
    RELOAD_SETTLE = 3_000

    # Rate limiting
    RATE_LIMIT_STATUS = 429
    FORBIDDEN_STATUS = 403
    BACKOFF_PENALTY = 5 * 60_000

    # Action confirmation
    CONFIRM_ATTEMPTS = 8
    CONFIRM_INTERVAL = 1_000
    POST_ACTION_PAUSE = (2_000, 5_000)

    # Control loop
    MIN_TICK = 1_000
    MAX_TICK = 5_000
    ERROR_THRESHOLD = 5
    STAGNATION_WINDOW = 50 * 60_000
    PERSIST_INTERVAL = 5 * 60_000
    KEEP_ALIVE_PROBABILITY = 0.2

    # Long-cycle action: consecutive short re-checks before the long interval applies
    REFINE_SHORT_RECHECKS = 5

    # Supervisor (ms)
    RESTART_DELAY = 15_000
    LAUNCH_STAGGER = 500
    TERMINATE_GRACE = 10_000

    # FSM deadlines (ms): a state older than this is considered stuck
    FSM_DEADLINES: dict[str, int] = {
        "NAVIGATING": 15_000,
        "RELOADING": 120_000,
    }


# ---------------------------------------------------------------------------
# Action catalog: fixed evaluation order, one entry per action key
# ---------------------------------------------------------------------------

LONG_CYCLE_ACTION = "autoRefine"

ACTIONS: dict[str, dict[str, Any]] = {
    "autoAC": {"label": "auto collector"},
    "autoSM": {"label": "shard multiplier"},
    "autoCB": {"label": "conveyor booster"},
    "autoFarm": {"label": "farm reward", "interval_ms": 8 * 3_600_000, "jitter_ms": 0},
    LONG_CYCLE_ACTION: {"label": "start refining", "long_cycle": True},
}

# Page landmarks read by the executor
SELECTORS: dict[str, str] = {
    "action_text": "h3, div, span, p",
    "balance_label": "span.font-bold",
    "progress_counter": "span.text-sm.font-medium.text-amber-400.drop-shadow-sm.tracking-wide",
}
BALANCE_CURRENT_LABEL = "Your Shards"
BALANCE_REQUIRED_LABEL = "Required Shards"

# Noise filters for page diagnostics
IGNORED_PAGE_ERRORS = re.compile(
    r"Minified React error #\d+|TypeError: Cannot set properties of null"
    r"|ResizeObserver loop limit exceeded"
)
IGNORED_REQUEST_FAILURES = frozenset({"net::ERR_ABORTED", "NS_BINDING_ABORTED"})
