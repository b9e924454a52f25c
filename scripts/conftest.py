"""Shared fakes for the session keeper tests.

Nothing here launches a browser or a process: the clock is simulated, the
target connection and executor are scripted, and the supervisor's spawner
hands out in-memory processes.
"""

import asyncio
import os
import random
import sys
from types import SimpleNamespace

import pytest

# Make the flat scripts/ modules importable
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from clock import Clock
from config import Config
from controller import SessionController
from models import (
    Ack,
    BalanceResult,
    Click,
    ClickResult,
    CooldownResult,
    KeepAlive,
    ProgressResult,
    ReadBalance,
    ReadCooldown,
    ReadProgress,
    SessionConfig,
)
from session import StateStore

T0 = 1_700_000_000_000


class FakeClock(Clock):
    """Simulated time. sleep() advances it instantly."""

    def __init__(self, start: int = T0):
        self.now = start
        self.sleeps: list[float] = []

    def now_ms(self) -> int:
        return self.now

    async def sleep(self, ms):
        self.sleeps.append(ms)
        self.now += int(ms)
        await asyncio.sleep(0)

    def advance(self, ms: int) -> None:
        self.now += int(ms)


class FakeConnection:
    """Scripted target connection."""

    def __init__(self, proxy=None, entry_url=Config.ENTRY_URL):
        self.proxy = proxy
        self.entry_url = entry_url
        self.url = "about:blank"
        self.signals = []
        self.gotos: list[tuple[str, str]] = []
        self.fail_urls: set[str] = set()
        self.needs_login = False
        self.login_waits = 0
        self.screenshots = []
        self.seeded_cookies = None
        self.cookie_jar = [{"name": "sid", "value": "abc", "domain": "example.test", "path": "/"}]
        self.started = False
        self.closed = False
        self._on_start = None
        self._on_done = None

    def set_navigation_listener(self, on_start, on_done):
        self._on_start = on_start
        self._on_done = on_done

    async def start(self, cookies=None):
        self.started = True
        self.seeded_cookies = cookies

    async def goto(self, url, wait_until="load", timeout=0):
        self.gotos.append((url, wait_until))
        if url in self.fail_urls:
            raise RuntimeError(f"Timeout {timeout}ms exceeded navigating to {url}")
        if self.needs_login and url == self.entry_url:
            self.url = url.rstrip("/") + "/auth/login"
        else:
            self.url = url

    async def wait_for_navigation(self, timeout):
        self.login_waits += 1
        self.url = self.entry_url

    def drain_signals(self):
        signals, self.signals = self.signals, []
        return signals

    async def cookies(self):
        return list(self.cookie_jar)

    async def screenshot(self, path):
        self.screenshots.append(path)

    async def close(self):
        self.closed = True

    # Page-initiated navigation, as the browser would report it
    def begin_navigation(self, url="https://example.test/next"):
        self._on_start(url)

    def finish_navigation(self, url="https://example.test/next"):
        self._on_done(url)


class FakeExecutor:
    """Scripted target page. Every key starts available."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.available: dict[str, bool] = {}
        self.missing: set[str] = set()
        self.cooldown_ms = 300_000
        self.confirm = True
        self.balance = BalanceResult(current=0, required=0)
        self.progress = 0.0
        self.fail_next = 0
        self.error = RuntimeError("Timeout 30000ms exceeded.")
        self.commands = []
        self.click_times: list[int] = []

    async def execute(self, command):
        self.commands.append(command)
        if self.fail_next > 0:
            self.fail_next -= 1
            raise self.error
        if isinstance(command, Click):
            self.click_times.append(self.clock.now_ms())
            if self.confirm:
                self.available[command.action_key] = False
            return ClickResult(ok=True)
        if isinstance(command, ReadCooldown):
            key = command.action_key
            if key in self.missing:
                return CooldownResult(found=False)
            available = self.available.get(key, True)
            return CooldownResult(
                found=True,
                available=available,
                cooldown_ms=0 if available else self.cooldown_ms,
            )
        if isinstance(command, ReadBalance):
            return self.balance
        if isinstance(command, ReadProgress):
            return ProgressResult(value=self.progress)
        if isinstance(command, KeepAlive):
            return Ack()
        raise TypeError(command)

    def clicks(self) -> list[str]:
        return [c.action_key for c in self.commands if isinstance(c, Click)]

    def count(self, command_type) -> int:
        return sum(1 for c in self.commands if isinstance(c, command_type))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_session(tmp_path, clock):
    """Build a controller wired to fakes. Returns a namespace of its parts."""

    def factory(config=None, seed=7, account_id="acc1", connection_factory=None):
        config = config or SessionConfig(actions={"autoAC": True}, keep_alive=False)
        store = StateStore(tmp_path, account_id)
        executor = FakeExecutor(clock)
        connections = []

        def default_factory(proxy):
            conn = FakeConnection(proxy, config.entry_url)
            connections.append(conn)
            return conn

        controller = SessionController(
            account_id,
            config,
            store,
            connection_factory or default_factory,
            lambda conn: executor,
            clock=clock,
            rng=random.Random(seed),
        )
        return SimpleNamespace(
            controller=controller,
            store=store,
            executor=executor,
            connections=connections,
            clock=clock,
        )

    return factory
