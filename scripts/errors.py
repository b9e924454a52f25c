"""Error types and classification for session control.

Every failure the controller sees is turned into a SessionError with a
Recoverability that decides the control-loop reaction:

- TRANSIENT → log, count towards the consecutive-error threshold
- BACKOFF   → open the backoff window, no reload
- RELOAD    → hard reload of the session
- FATAL     → session unit terminates; the supervisor restarts it
"""

from __future__ import annotations

import re
import time
from enum import Enum
from typing import Any

from models import SessionStateName


class Recoverability(str, Enum):
    TRANSIENT = "transient"
    BACKOFF = "backoff"
    RELOAD = "reload"
    FATAL = "fatal"


# ---------------------------------------------------------------------------
# Typed errors
# ---------------------------------------------------------------------------

class SessionError(Exception):
    """Structured error with a stable code and a recoverability class."""

    def __init__(
        self,
        code: str,
        message: str,
        *,
        recoverability: Recoverability = Recoverability.TRANSIENT,
        at_state: SessionStateName | None = None,
        cause: Any = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.recoverability = recoverability
        self.at_state = at_state
        self.cause = cause
        self.details = details or {}
        self.timestamp_ms = int(time.time() * 1000)

    @property
    def is_transient(self) -> bool:
        return self.recoverability == Recoverability.TRANSIENT

    @property
    def needs_reload(self) -> bool:
        return self.recoverability == Recoverability.RELOAD

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "recoverability": self.recoverability.value,
            "at_state": self.at_state.value if self.at_state else None,
            "timestamp_ms": self.timestamp_ms,
        }

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class SessionTerminated(SessionError):
    """The session unit cannot continue. Surfaced to the supervisor."""

    def __init__(self, message: str, *, cause: Any = None) -> None:
        super().__init__(
            "RELOAD_FAILED",
            message,
            recoverability=Recoverability.FATAL,
            at_state=SessionStateName.RELOADING,
            cause=cause,
        )


# ---------------------------------------------------------------------------
# Error catalog: stable codes with default recoverability
# ---------------------------------------------------------------------------

_CATALOG: dict[str, Recoverability] = {
    "TIMEOUT_ACTION": Recoverability.TRANSIENT,
    "TIMEOUT_NAVIGATION": Recoverability.TRANSIENT,
    "ELEMENT_NOT_FOUND": Recoverability.TRANSIENT,
    "ELEMENT_DETACHED": Recoverability.TRANSIENT,
    "CONTEXT_DESTROYED": Recoverability.TRANSIENT,
    "NETWORK_ERROR": Recoverability.TRANSIENT,
    "RATE_LIMITED": Recoverability.BACKOFF,
    "FORBIDDEN": Recoverability.RELOAD,
    "TARGET_CLOSED": Recoverability.RELOAD,
    "NAVIGATION_STUCK": Recoverability.RELOAD,
    "STAGNATION": Recoverability.RELOAD,
    "ERROR_THRESHOLD": Recoverability.RELOAD,
    "RELOAD_FAILED": Recoverability.FATAL,
    "INVALID_TRANSITION": Recoverability.FATAL,
    "UNKNOWN": Recoverability.TRANSIENT,
}


def create_error(
    code: str,
    message: str,
    *,
    at_state: SessionStateName | None = None,
    cause: Any = None,
    details: dict[str, Any] | None = None,
    recoverability: Recoverability | None = None,
) -> SessionError:
    """Create a SessionError from the catalog, with optional overrides."""
    return SessionError(
        code,
        message,
        recoverability=recoverability or _CATALOG.get(code, _CATALOG["UNKNOWN"]),
        at_state=at_state,
        cause=cause,
        details=details,
    )


# ---------------------------------------------------------------------------
# Playwright exception → SessionError
# ---------------------------------------------------------------------------

def _extract_timeout(msg: str) -> str:
    m = re.search(r"(\d+)ms", msg)
    return m.group(1) if m else "?"


def _extract_net_error(msg: str) -> str:
    m = re.search(r"(net::ERR_\w+|NS_ERROR_\w+)", msg)
    return m.group(1) if m else "unknown network error"


_PATTERN_MAP: list[tuple[str, str, object]] = [
    (
        "403 Forbidden",
        "FORBIDDEN",
        lambda e: "Target answered 403 Forbidden.",
    ),
    (
        "429",
        "RATE_LIMITED",
        lambda e: "Target answered 429 Too Many Requests.",
    ),
    (
        "Timeout",
        "TIMEOUT_ACTION",
        lambda e: f"Operation timed out after {_extract_timeout(str(e))}ms.",
    ),
    (
        "Target closed",
        "TARGET_CLOSED",
        lambda e: "Browser page or context was closed.",
    ),
    (
        "has been closed",
        "TARGET_CLOSED",
        lambda e: "Browser page or context was closed.",
    ),
    (
        "Execution context was destroyed",
        "CONTEXT_DESTROYED",
        lambda e: "Page navigated during the operation.",
    ),
    (
        "detached",
        "ELEMENT_DETACHED",
        lambda e: "Element was removed from the DOM.",
    ),
    (
        "net::ERR_",
        "NETWORK_ERROR",
        lambda e: f"Network error: {_extract_net_error(str(e))}.",
    ),
    (
        "NS_ERROR_",
        "NETWORK_ERROR",
        lambda e: f"Network error: {_extract_net_error(str(e))}.",
    ),
]


def classify_error(
    error: BaseException,
    at_state: SessionStateName | None = None,
) -> SessionError:
    """Classify a Playwright/browser exception into a SessionError."""
    if isinstance(error, SessionError):
        return error
    msg = str(error)
    for pattern, code, msg_fn in _PATTERN_MAP:
        if pattern.lower() in msg.lower():
            return create_error(code, msg_fn(error), at_state=at_state, cause=error)
    return create_error("UNKNOWN", f"Browser error: {msg}", at_state=at_state, cause=error)
