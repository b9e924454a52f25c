#!/usr/bin/env python3
"""
Session process entry point: runs one SessionController until stopped.

Started by the supervisor with cwd = the account's run directory:
    python scripts/runner.py --run-dir runs/acc1 --account acc1

HEADLESS and CHROME_PATH from the environment take precedence over
config.json. Exit code 1 means the session could not recover; the
supervisor restarts it either way.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path

# Ensure scripts/ is on path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from browser_engine import TargetConnection
from config import Config, configure_logging, env_flag, validate_account_id
from controller import SessionController
from errors import SessionTerminated
from executor import PageActionExecutor
from proxy import ProxyAllocator
from session import StateStore

log = logging.getLogger(__name__)


def build_controller(run_dir: Path, account_id: str) -> SessionController:
    store = StateStore(run_dir, account_id)
    config = store.load_config()
    stats = store.load_stats()
    # A persisted cursor wins over the supervisor's seed
    cursor = stats.proxy_cursor or config.proxy_cursor
    allocator = ProxyAllocator(config.proxy_rotation, cursor)
    profile_dir = run_dir / Config.PROFILE_DIR_NAME

    def connection_factory(proxy):
        # Built from the live config so reloads pick up config.json edits
        return TargetConnection(
            profile_dir,
            controller.config,
            proxy,
            headless=env_flag("HEADLESS"),
            executable_path=os.getenv("CHROME_PATH", ""),
        )

    def executor_factory(connection):
        return PageActionExecutor(connection.page)

    controller = SessionController(
        account_id,
        config,
        store,
        connection_factory,
        executor_factory,
        allocator,
    )
    return controller


async def run_session(controller: SessionController) -> int:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, controller.request_stop)
        except NotImplementedError:
            log.debug("Signal handlers not supported on this platform")

    try:
        await controller.run()
    except SessionTerminated as e:
        log.error("Session terminated: %s", e)
        return 1
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Run one account session")
    parser.add_argument("--run-dir", type=Path, default=Path.cwd(),
                        help="Account run directory (default: cwd)")
    parser.add_argument("--account", required=True, help="Account id")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args(argv)

    configure_logging(logging.DEBUG if args.verbose else logging.INFO)

    err = validate_account_id(args.account)
    if err:
        log.error(err)
        return 2

    controller = build_controller(args.run_dir.resolve(), args.account)
    return asyncio.run(run_session(controller))


if __name__ == "__main__":
    sys.exit(main())
