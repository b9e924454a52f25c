#!/usr/bin/env python3
"""
Process supervisor: one isolated session process per account.

Each account gets runs/<id>/ with its own browser profile, config.json,
stats and cookies. The session process (runner.py) is relaunched after a
fixed delay whenever it exits, whatever the exit code. Launches are
staggered so all browsers do not start in the same instant.

Usage:
    python scripts/supervisor.py [--accounts accounts.json] [--runs-dir runs]
                                 [--defaults defaults.json]
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import shutil
import signal
import sys
from pathlib import Path
from typing import IO, Any, Awaitable, Callable

# Ensure scripts/ is on path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from pydantic import ValidationError
from pydantic.alias_generators import to_camel

from clock import SYSTEM_CLOCK, Clock
from config import Config, configure_logging, safe_run_path
from models import Account, SessionConfig
from proxy import to_proxy_string
from session import StateStore, read_json

log = logging.getLogger(__name__)

RUNNER_PATH = Path(__file__).resolve().parent / "runner.py"

Spawner = Callable[[list[str], Path, dict[str, str]], Awaitable[Any]]

# Account fields copied over the defaults when set
_ACCOUNT_OVERRIDES = (
    "headless",
    "reload_minutes",
    "refine_hours",
    "refine_min_minutes",
    "accept_language",
    "timezone",
)


# ---------------------------------------------------------------------------
# Accounts and run directories
# ---------------------------------------------------------------------------

def load_accounts(path: Path | str) -> list[Account]:
    """Read the account list. Records without an id are skipped."""
    path = Path(path)
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, list):
        raise ValueError(f"{path} must contain a JSON array of accounts")

    accounts: list[Account] = []
    seen: set[str] = set()
    for record in data:
        if not isinstance(record, dict) or not record.get("id"):
            log.warning("Skipping account record without id: %r", record)
            continue
        account = Account.model_validate(record)
        if account.id in seen:
            raise ValueError(f"Duplicate account id '{account.id}' in {path}")
        seen.add(account.id)
        accounts.append(account)
    return accounts


def build_session_config(
    account: Account,
    defaults: SessionConfig,
    run_dir: Path,
    index: int = 0,
) -> SessionConfig:
    """Global defaults overridden by the account's own settings."""
    data = defaults.model_dump(by_alias=True, mode="json")

    proxy = to_proxy_string(account.proxy)
    if proxy:
        data["proxies"] = [proxy]
    for field in _ACCOUNT_OVERRIDES:
        value = getattr(account, field)
        if value is not None:
            data[to_camel(field)] = value
    if account.use_system_chrome and account.chrome_path:
        data["chromePath"] = account.chrome_path

    data.update(account.overrides)
    data["cookiesFile"] = str(run_dir / f"cookies_{account.id}.json")
    # Sequential rotation starts each account at a different pool slot
    data["proxyCursor"] = index
    return SessionConfig.model_validate(data)


def prepare_run_dir(
    account: Account,
    defaults: SessionConfig,
    runs_dir: Path,
    index: int = 0,
) -> Path:
    """Create runs/<id>/, write config.json, seed cookies and browser profile."""
    run_dir = safe_run_path(runs_dir, account.id)
    if run_dir is None:
        raise ValueError(f"Invalid run directory for account '{account.id}'")
    run_dir.mkdir(parents=True, exist_ok=True)

    store = StateStore(run_dir, account.id)
    store.save_config(build_session_config(account, defaults, run_dir, index))

    if account.cookies_file:
        src = Path(account.cookies_file).expanduser()
        # Never overwrite cookies the session has refreshed since
        if src.exists() and not store.cookies_path.exists():
            shutil.copyfile(src, store.cookies_path)

    profile_dir = run_dir / Config.PROFILE_DIR_NAME
    if account.user_data_dir and not profile_dir.exists():
        src = Path(account.user_data_dir).expanduser()
        if src.is_dir():
            log.info("[%s] Seeding browser profile from %s", account.id, src)
            shutil.copytree(src, profile_dir, symlinks=True, ignore_dangling_symlinks=True)
    return run_dir


def build_env(account: Account, base: dict[str, str] | None = None) -> dict[str, str]:
    env = dict(os.environ if base is None else base)
    if account.headless is not None:
        env["HEADLESS"] = str(account.headless).lower()
    else:
        env["HEADLESS"] = env.get("HEADLESS") or "true"
    if account.use_system_chrome and account.chrome_path:
        env["CHROME_PATH"] = account.chrome_path
    return env


async def spawn_process(cmd: list[str], cwd: Path, env: dict[str, str]) -> Any:
    return await asyncio.create_subprocess_exec(
        *cmd,
        cwd=str(cwd),
        env=env,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )


async def _relay(stream: Any, account_id: str, sink: IO[str]) -> None:
    """Copy a child's output line by line, prefixed with its account id."""
    if stream is None:
        return
    async for raw in stream:
        line = raw.decode("utf-8", errors="replace").rstrip("\n")
        sink.write(f"[{account_id}] {line}\n")
        sink.flush()


# ---------------------------------------------------------------------------
# Supervisor
# ---------------------------------------------------------------------------

class ProcessSupervisor:
    """Keeps one session process per account running indefinitely."""

    def __init__(
        self,
        accounts: list[Account],
        defaults: SessionConfig | None = None,
        runs_dir: Path | str = Config.RUNS_DIR,
        *,
        clock: Clock = SYSTEM_CLOCK,
        spawner: Spawner = spawn_process,
        restart_delay: int = Config.RESTART_DELAY,
        stagger: int = Config.LAUNCH_STAGGER,
        runner: Path = RUNNER_PATH,
    ) -> None:
        self.accounts = accounts
        self.defaults = defaults or SessionConfig()
        self.runs_dir = Path(runs_dir)
        self.clock = clock
        self.spawner = spawner
        self.restart_delay = restart_delay
        self.stagger = stagger
        self.runner = runner
        self.launches: dict[str, int] = {a.id: 0 for a in accounts}
        self._procs: dict[str, Any] = {}
        self._tasks: list[asyncio.Task] = []
        self._stopping = False

    @property
    def stopping(self) -> bool:
        return self._stopping

    def command(self, account: Account, run_dir: Path) -> list[str]:
        return [
            sys.executable,
            str(self.runner),
            "--run-dir", str(run_dir),
            "--account", account.id,
        ]

    async def run(self) -> None:
        """Launch every account, staggered, and keep them running until stop()."""
        self.runs_dir.mkdir(parents=True, exist_ok=True)
        for index, account in enumerate(self.accounts):
            if self._stopping:
                break
            log.info("Starting %s", account.id)
            self._tasks.append(asyncio.create_task(self._keep_running(account, index)))
            await self.clock.sleep(self.stagger)
        await asyncio.gather(*self._tasks, return_exceptions=True)

    async def _keep_running(self, account: Account, index: int) -> None:
        while not self._stopping:
            try:
                code = await self._run_once(account, index)
                log.warning(
                    "[%s] exited with code %s. Restarting in %ds",
                    account.id, code, self.restart_delay // 1000,
                )
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("[%s] launch failed", account.id)
            if self._stopping:
                break
            await self.clock.sleep(self.restart_delay)

    async def _run_once(self, account: Account, index: int) -> int | None:
        run_dir = prepare_run_dir(account, self.defaults, self.runs_dir, index)
        proc = await self.spawner(
            self.command(account, run_dir), run_dir, build_env(account)
        )
        self._procs[account.id] = proc
        self.launches[account.id] += 1
        relays = [
            asyncio.create_task(_relay(getattr(proc, "stdout", None), account.id, sys.stdout)),
            asyncio.create_task(_relay(getattr(proc, "stderr", None), account.id, sys.stderr)),
        ]
        try:
            return await proc.wait()
        finally:
            self._procs.pop(account.id, None)
            await asyncio.gather(*relays, return_exceptions=True)

    async def stop(self, grace: int = Config.TERMINATE_GRACE) -> None:
        """Terminate all children and stop relaunching them."""
        if self._stopping:
            return
        self._stopping = True
        log.info("Stopping %d session(s)", len(self._procs))
        procs = list(self._procs.items())
        for account_id, proc in procs:
            try:
                proc.terminate()
            except ProcessLookupError:
                log.debug("[%s] already exited", account_id)
        for account_id, proc in procs:
            try:
                await asyncio.wait_for(proc.wait(), timeout=grace / 1000)
            except asyncio.TimeoutError:
                log.warning("[%s] did not exit in time, killing", account_id)
                proc.kill()
        for task in self._tasks:
            task.cancel()


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def load_defaults(path: Path | None) -> SessionConfig:
    if path is None:
        return SessionConfig()
    data = read_json(path, {})
    return SessionConfig.model_validate(data if isinstance(data, dict) else {})


async def _serve(supervisor: ProcessSupervisor) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(
                sig, lambda: asyncio.ensure_future(supervisor.stop())
            )
        except NotImplementedError:
            log.debug("Signal handlers not supported on this platform")
    await supervisor.run()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Multi-account session supervisor")
    parser.add_argument("--accounts", type=Path, default=Config.ACCOUNTS_FILE,
                        help=f"Account list (default: {Config.ACCOUNTS_FILE})")
    parser.add_argument("--runs-dir", type=Path, default=Config.RUNS_DIR,
                        help=f"Per-account run directories (default: {Config.RUNS_DIR})")
    parser.add_argument("--defaults", type=Path, default=None,
                        help="JSON file with default session options")
    args = parser.parse_args(argv)

    configure_logging()

    try:
        accounts = load_accounts(args.accounts)
        defaults = load_defaults(args.defaults)
    except (OSError, ValueError, ValidationError) as e:
        log.error("Cannot load accounts: %s", e)
        return 1
    if not accounts:
        log.error("%s has no accounts. Run enroll.py first.", args.accounts)
        return 1

    supervisor = ProcessSupervisor(accounts, defaults, args.runs_dir)
    asyncio.run(_serve(supervisor))
    return 0


if __name__ == "__main__":
    sys.exit(main())
