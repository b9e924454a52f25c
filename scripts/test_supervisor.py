"""Process supervisor tests with in-memory processes."""

import asyncio
import json
import sys

import pytest

from conftest import FakeClock
from models import Account, SessionConfig
from session import StateStore
from supervisor import (
    ProcessSupervisor,
    build_env,
    build_session_config,
    load_accounts,
    prepare_run_dir,
)


class FakeProcess:
    def __init__(self, exit_code=None):
        self.stdout = None
        self.stderr = None
        self.returncode = None
        self.terminated = False
        self._exited = asyncio.Event()
        if exit_code is not None:
            self.finish(exit_code)

    def finish(self, code):
        self.returncode = code
        self._exited.set()

    async def wait(self):
        await self._exited.wait()
        return self.returncode

    def terminate(self):
        self.terminated = True
        self.finish(-15)

    def kill(self):
        self.finish(-9)


# ---------------------------------------------------------------------------
# Account list
# ---------------------------------------------------------------------------

def test_load_accounts_skips_records_without_id(tmp_path, caplog):
    path = tmp_path / "accounts.json"
    path.write_text(json.dumps([{"id": "acc1"}, {"proxy": "h.test:1"}, {"id": "acc2", "headless": True}]))
    accounts = load_accounts(path)
    assert [a.id for a in accounts] == ["acc1", "acc2"]
    assert accounts[1].headless is True
    assert "without id" in caplog.text


def test_load_accounts_rejects_duplicates(tmp_path):
    path = tmp_path / "accounts.json"
    path.write_text(json.dumps([{"id": "acc1"}, {"id": "acc1"}]))
    with pytest.raises(ValueError):
        load_accounts(path)


def test_load_accounts_rejects_unsafe_id(tmp_path):
    path = tmp_path / "accounts.json"
    path.write_text(json.dumps([{"id": "../escape"}]))
    with pytest.raises(ValueError):
        load_accounts(path)


def test_load_accounts_requires_array(tmp_path):
    path = tmp_path / "accounts.json"
    path.write_text(json.dumps({"id": "acc1"}))
    with pytest.raises(ValueError):
        load_accounts(path)


# ---------------------------------------------------------------------------
# Resolved config and run directory
# ---------------------------------------------------------------------------

def test_account_overrides_defaults(tmp_path):
    account = Account.model_validate({
        "id": "acc2",
        "proxy": {"serverArg": "http://h.test:8080", "auth": {"username": "u", "password": "p"}},
        "headless": True,
        "reloadMinutes": 25,
        "refineHours": 6,
        "useSystemChrome": True,
        "chromePath": "/opt/chrome",
        "timezone": "UTC",
        "overrides": {"boostIntervalMs": 240000, "autoFarm": False},
    })
    defaults = SessionConfig(reload_minutes=50, log_each=120)
    config = build_session_config(account, defaults, tmp_path / "acc2", index=1)

    assert config.proxies == ["http://u:p@h.test:8080"]
    assert config.headless is True
    assert config.reload_minutes == 25
    assert config.refine_hours == 6
    assert config.chrome_path == "/opt/chrome"
    assert config.timezone == "UTC"
    assert config.boost_interval_ms == 240_000
    assert not config.is_enabled("autoFarm")
    assert config.log_each == 120
    assert config.proxy_cursor == 1


def test_defaults_kept_when_account_is_bare(tmp_path):
    config = build_session_config(Account(id="acc1"), SessionConfig(), tmp_path)
    assert config.proxies == []
    assert config.reload_minutes == 50
    assert config.headless is False


def test_prepare_run_dir_writes_config_and_seeds_cookies(tmp_path):
    cookies = tmp_path / "cookies_src.json"
    cookies.write_text(json.dumps([{"name": "sid", "value": "1"}]))
    account = Account(id="acc1", cookies_file=str(cookies))

    run_dir = prepare_run_dir(account, SessionConfig(), tmp_path / "runs")
    store = StateStore(run_dir, "acc1")
    assert run_dir == (tmp_path / "runs" / "acc1").resolve()
    assert store.load_config().entry_url == SessionConfig().entry_url
    assert store.load_cookies() == [{"name": "sid", "value": "1"}]

    # Refreshed cookies in the run dir are never overwritten
    store.save_cookies([{"name": "sid", "value": "fresh"}])
    prepare_run_dir(account, SessionConfig(), tmp_path / "runs")
    assert store.load_cookies() == [{"name": "sid", "value": "fresh"}]


def test_prepare_run_dir_seeds_profile_once(tmp_path):
    profile = tmp_path / "profiles" / "acc1"
    profile.mkdir(parents=True)
    (profile / "Preferences").write_text("{}")
    account = Account(id="acc1", user_data_dir=str(profile))

    run_dir = prepare_run_dir(account, SessionConfig(), tmp_path / "runs")
    assert (run_dir / "browser_profile" / "Preferences").exists()


def test_build_env_headless_rules():
    assert build_env(Account(id="a", headless=False), {})["HEADLESS"] == "false"
    assert build_env(Account(id="a"), {"HEADLESS": "false"})["HEADLESS"] == "false"
    assert build_env(Account(id="a"), {})["HEADLESS"] == "true"


def test_build_env_chrome_path():
    system = Account(id="a", use_system_chrome=True, chrome_path="/opt/chrome")
    assert build_env(system, {"CHROME_PATH": "/usr/bin/x"})["CHROME_PATH"] == "/opt/chrome"
    assert build_env(Account(id="a"), {"CHROME_PATH": "/usr/bin/x"})["CHROME_PATH"] == "/usr/bin/x"
    assert "CHROME_PATH" not in build_env(Account(id="a"), {})


# ---------------------------------------------------------------------------
# Launch loop
# ---------------------------------------------------------------------------

async def test_relaunch_after_fixed_delay(tmp_path):
    clock = FakeClock()
    launches = []
    commands = []

    async def spawner(cmd, cwd, env):
        launches.append(clock.now_ms())
        commands.append(cmd)
        if len(launches) == 3:
            asyncio.get_running_loop().call_soon(
                lambda: asyncio.ensure_future(supervisor.stop())
            )
            return FakeProcess()
        return FakeProcess(exit_code=1 if len(launches) == 1 else 0)

    supervisor = ProcessSupervisor(
        [Account(id="acc1")], runs_dir=tmp_path, clock=clock, spawner=spawner
    )
    await asyncio.wait_for(supervisor.run(), timeout=5)

    assert len(launches) == 3
    assert launches[1] - launches[0] == 15_000
    assert launches[2] - launches[1] == 15_000
    assert supervisor.launches == {"acc1": 3}
    assert commands[0][0] == sys.executable
    assert commands[0][-4:] == ["--run-dir", str((tmp_path / "acc1").resolve()), "--account", "acc1"]


async def test_launches_are_staggered(tmp_path):
    clock = FakeClock()
    launches = {}
    accounts = [Account(id=f"acc{i}") for i in range(1, 4)]

    async def spawner(cmd, cwd, env):
        launches[cmd[-1]] = clock.now_ms()
        if len(launches) == len(accounts):
            asyncio.get_running_loop().call_soon(
                lambda: asyncio.ensure_future(supervisor.stop())
            )
        return FakeProcess()

    supervisor = ProcessSupervisor(accounts, runs_dir=tmp_path, clock=clock, spawner=spawner)
    await asyncio.wait_for(supervisor.run(), timeout=5)

    times = [launches[a.id] for a in accounts]
    assert [b - a for a, b in zip(times, times[1:])] == [500, 500]


async def test_stop_terminates_children_and_does_not_relaunch(tmp_path):
    clock = FakeClock()
    procs = []

    async def spawner(cmd, cwd, env):
        proc = FakeProcess()
        procs.append(proc)
        asyncio.get_running_loop().call_soon(
            lambda: asyncio.ensure_future(supervisor.stop())
        )
        return proc

    supervisor = ProcessSupervisor([Account(id="acc1")], runs_dir=tmp_path, clock=clock, spawner=spawner)
    await asyncio.wait_for(supervisor.run(), timeout=5)

    assert len(procs) == 1
    assert procs[0].terminated
    assert supervisor.stopping


async def test_restarted_session_sees_persisted_action_state(tmp_path):
    clock = FakeClock()
    seen = []

    async def spawner(cmd, cwd, env):
        store = StateStore(cwd, "acc1")
        stats = store.load_stats()
        seen.append(stats.action("autoAC").last_run_at)
        if len(seen) == 1:
            stats.action("autoAC").last_run_at = 1_700_000_123_000
            stats.action("autoAC").run_count = 4
            store.save_stats(stats)
            return FakeProcess(exit_code=1)
        asyncio.get_running_loop().call_soon(
            lambda: asyncio.ensure_future(supervisor.stop())
        )
        return FakeProcess()

    supervisor = ProcessSupervisor([Account(id="acc1")], runs_dir=tmp_path, clock=clock, spawner=spawner)
    await asyncio.wait_for(supervisor.run(), timeout=5)

    assert seen == [0, 1_700_000_123_000]


async def test_launch_failure_is_retried(tmp_path):
    clock = FakeClock()
    attempts = []

    async def spawner(cmd, cwd, env):
        attempts.append(clock.now_ms())
        if len(attempts) == 1:
            raise OSError("exec failed")
        asyncio.get_running_loop().call_soon(
            lambda: asyncio.ensure_future(supervisor.stop())
        )
        return FakeProcess()

    supervisor = ProcessSupervisor([Account(id="acc1")], runs_dir=tmp_path, clock=clock, spawner=spawner)
    await asyncio.wait_for(supervisor.run(), timeout=5)

    assert attempts[1] - attempts[0] == 15_000
