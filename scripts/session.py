"""
Per-session state persistence.

Each session owns one run directory holding three independent files:

  stats_<id>.json    reload count, per-action run counts and last-run times
  cookies_<id>.json  browser cookie snapshot
  config.json        resolved SessionConfig

Every file is rewritten atomically (temp file in the same directory, then
os.replace), so a crash leaves either the old or the new version. The files
are not updated together; a crash between two writes can leave them out
of step, which both sides tolerate.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from config import validate_account_id
from models import SessionConfig, SessionStats

log = logging.getLogger(__name__)


def atomic_write_json(path: Path, data: Any) -> None:
    """Write JSON to ``path`` via a temp file and os.replace."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2, default=str)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise


def read_json(path: Path, default: Any) -> Any:
    """Load JSON, falling back to ``default`` on a missing or corrupt file."""
    if not path.exists():
        return default
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        log.warning("Error loading %s: %s", path, e)
        return default


class StateStore:
    """Load/save of one session's durable state. Pure I/O, no scheduling."""

    def __init__(self, run_dir: Path | str, account_id: str) -> None:
        err = validate_account_id(account_id)
        if err:
            raise ValueError(err)
        self.run_dir = Path(run_dir)
        self.account_id = account_id
        # Highest lastRunAt written so far, per action key
        self._persisted_last_run: dict[str, int] = {}

    @property
    def stats_path(self) -> Path:
        return self.run_dir / f"stats_{self.account_id}.json"

    @property
    def cookies_path(self) -> Path:
        return self.run_dir / f"cookies_{self.account_id}.json"

    @property
    def config_path(self) -> Path:
        return self.run_dir / "config.json"

    # -----------------------------------------------------------------------
    # Stats
    # -----------------------------------------------------------------------

    def load_stats(self) -> SessionStats:
        data = read_json(self.stats_path, {})
        if not isinstance(data, dict):
            log.warning("Ignoring malformed stats file %s", self.stats_path)
            data = {}
        try:
            stats = SessionStats.from_file(data)
        except (TypeError, ValueError) as e:
            log.warning("Ignoring malformed stats file %s: %s", self.stats_path, e)
            stats = SessionStats()
        self._persisted_last_run = {
            key: state.last_run_at for key, state in stats.actions.items()
        }
        return stats

    def save_stats(self, stats: SessionStats) -> None:
        """Persist stats. A key's persisted lastRunAt never moves backwards."""
        payload = stats.to_file()
        last_run = payload["lastRunAt"]
        for key, persisted in self._persisted_last_run.items():
            if last_run.get(key, 0) < persisted:
                last_run[key] = persisted
        atomic_write_json(self.stats_path, payload)
        self._persisted_last_run = dict(last_run)

    # -----------------------------------------------------------------------
    # Cookies
    # -----------------------------------------------------------------------

    def load_cookies(self) -> list[dict]:
        data = read_json(self.cookies_path, [])
        if not isinstance(data, list):
            log.warning("Ignoring malformed cookie file %s", self.cookies_path)
            return []
        return data

    def save_cookies(self, cookies: list[dict]) -> None:
        atomic_write_json(self.cookies_path, cookies)

    # -----------------------------------------------------------------------
    # Config
    # -----------------------------------------------------------------------

    def load_config(self, defaults: SessionConfig | None = None) -> SessionConfig:
        """Resolved config: file values over ``defaults``."""
        base = (defaults or SessionConfig()).model_dump(by_alias=True, mode="json")
        data = read_json(self.config_path, {})
        if not isinstance(data, dict):
            log.warning("Ignoring malformed config file %s", self.config_path)
            data = {}
        try:
            return SessionConfig.model_validate({**base, **data})
        except ValueError as e:
            log.warning("Invalid config %s, using defaults: %s", self.config_path, e)
            return SessionConfig.model_validate(base)

    def save_config(self, config: SessionConfig) -> None:
        atomic_write_json(self.config_path, config.model_dump(by_alias=True, mode="json"))
