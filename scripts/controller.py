"""
Session controller: the single-threaded control loop of one account.

One SessionController owns one target connection, its SessionFSM, the
action bookkeeping (SessionStats), the backoff window and the failure
counters. Nothing here is module-global; every piece of mutable state lives
on the controller and is carried across reloads explicitly.

Each tick runs, in order:

  1. scheduled reload           (takes precedence over the watchdog)
  2. watchdog                   (NAVIGATING past its deadline → one reload)
  3. target signals             (403 → reload, 429 → backoff window)
  4. backoff                    (no executor commands while active)
  5. scheduling                 (first eligible action, click + confirm)
  6. keep-alive
  7. stagnation check           (progress counter frozen → reload)
  8. periodic persistence and status line

tick() returns how long to sleep before the next one.
"""

from __future__ import annotations

import logging
import random
from typing import Any, Callable

from clock import SYSTEM_CLOCK, Clock
from config import Config
from errors import (
    Recoverability,
    SessionError,
    SessionTerminated,
    classify_error,
    create_error,
)
from executor import ActionExecutor
from models import (
    BackoffWindow,
    BalanceResult,
    Click,
    KeepAlive,
    ProxyIdentity,
    ReadBalance,
    ReadCooldown,
    ReadProgress,
    SessionConfig,
    SessionStateName,
    SessionStats,
    TargetSignal,
)
from proxy import ProxyAllocator
from scheduler import ActionScheduler
from session import StateStore
from session_fsm import SessionFSM

log = logging.getLogger(__name__)

ConnectionFactory = Callable[[ProxyIdentity | None], Any]
ExecutorFactory = Callable[[Any], ActionExecutor]

# States from which a navigation may start
_NAV_ENTRY_STATES = (
    SessionStateName.IDLE,
    SessionStateName.BACKOFF,
    SessionStateName.RELOADING,
)


class SessionController:
    """Drives one session: navigation, scheduling, recovery, persistence."""

    def __init__(
        self,
        account_id: str,
        config: SessionConfig,
        store: StateStore,
        connection_factory: ConnectionFactory,
        executor_factory: ExecutorFactory,
        allocator: ProxyAllocator | None = None,
        *,
        clock: Clock = SYSTEM_CLOCK,
        rng: random.Random | None = None,
    ) -> None:
        self.account_id = account_id
        self.config = config
        self.store = store
        self.clock = clock
        self.rng = rng or random.Random()
        self.allocator = allocator or ProxyAllocator(
            config.proxy_rotation, config.proxy_cursor, self.rng
        )
        self.scheduler = ActionScheduler(self.rng)
        self.fsm = SessionFSM(clock)
        self.stats = SessionStats()
        self.backoff = BackoffWindow()
        self.proxy: ProxyIdentity | None = None
        self.connection: Any = None
        self.executor: ActionExecutor | None = None

        self._connection_factory = connection_factory
        self._executor_factory = executor_factory
        self._stop_requested = False
        self._errors = 0
        self._insufficient_streak = 0
        self._long_cycle_not_before = 0
        self._last_progress: float | None = None
        self._progress_changed_at = 0
        self._next_reload_at = 0
        self._next_persist_at = 0
        self._next_status_at = 0

    # -----------------------------------------------------------------------
    # Properties
    # -----------------------------------------------------------------------

    @property
    def error_count(self) -> int:
        return self._errors

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    @property
    def next_reload_at(self) -> int:
        return self._next_reload_at

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    async def start(self) -> None:
        """Load state, pick a proxy, open the target and arm the timers."""
        self.stats = self.store.load_stats()
        self.proxy = self.allocator.pick(self.config.proxies)
        try:
            await self._launch()
        except Exception as e:
            self.fsm.to_terminated()
            raise SessionTerminated(f"Session start failed: {e}", cause=e) from e
        now = self.clock.now_ms()
        self._arm_timers(now)
        self._next_persist_at = now + Config.PERSIST_INTERVAL
        self._next_status_at = now + self.config.log_each * 1000
        log.info(
            "Session %s started (proxy=%s, actions=%s)",
            self.account_id,
            self.proxy or "none",
            ",".join(self.scheduler.order(self.config)) or "none",
        )

    async def run(self) -> None:
        """start(), then tick until request_stop(). Always flushes on exit."""
        await self.start()
        try:
            while not self._stop_requested:
                wait = await self.tick()
                if self._stop_requested:
                    break
                await self.clock.sleep(wait)
        finally:
            await self.shutdown()

    def request_stop(self) -> None:
        if not self._stop_requested:
            log.info("Stop requested for %s", self.account_id)
        self._stop_requested = True

    async def shutdown(self) -> None:
        """Best-effort flush of cookies, config and stats, then close."""
        if self.connection is not None:
            await self._save_cookies()
        try:
            self.store.save_config(self.config)
        except OSError as e:
            log.error("Could not save config: %s", e)
        self._save_stats()
        await self._close_connection()

    # -----------------------------------------------------------------------
    # Control loop
    # -----------------------------------------------------------------------

    async def tick(self) -> int:
        """One control-loop iteration. Returns the sleep before the next tick."""
        try:
            wait = await self._step()
        except SessionTerminated:
            raise
        except Exception as e:
            await self._handle_error(e)
            wait = Config.MIN_TICK
        else:
            # The threshold counts consecutive failing ticks only
            self._errors = 0
        return max(Config.MIN_TICK, min(Config.MAX_TICK, wait))

    async def _step(self) -> int:
        now = self.clock.now_ms()

        if self.config.auto_reload and now >= self._next_reload_at:
            await self.reload("scheduled")
            return Config.MIN_TICK

        if self._watchdog_fired():
            self.fsm.to_stuck()
            await self.reload("navigation stuck")
            return Config.MIN_TICK

        for signal in self.connection.drain_signals():
            if signal == TargetSignal.FORBIDDEN:
                await self.reload("forbidden")
                return Config.MIN_TICK
            if signal == TargetSignal.RATE_LIMITED:
                self._open_backoff(now)

        if self.backoff.is_active(now):
            if self.fsm.state_name == SessionStateName.IDLE:
                self.fsm.to_backoff()
            await self._housekeeping(now)
            return self.backoff.remaining(now)
        if self.fsm.state_name == SessionStateName.BACKOFF:
            log.info("Backoff window expired")
            self.fsm.to_idle()

        if self.fsm.state_name != SessionStateName.IDLE:
            return Config.MIN_TICK

        acted, wait = await self._schedule(now)

        if (
            not acted
            and self.config.keep_alive
            and self.rng.random() < Config.KEEP_ALIVE_PROBABILITY
        ):
            await self.executor.execute(KeepAlive())

        if await self._check_stagnation():
            await self.reload("stagnation")
            return Config.MIN_TICK

        await self._housekeeping(self.clock.now_ms())
        return wait

    def _watchdog_fired(self) -> bool:
        return (
            self.fsm.state_name == SessionStateName.NAVIGATING
            and self.fsm.is_deadline_exceeded()
        )

    def _open_backoff(self, now: int) -> None:
        self.backoff.active_until = now + Config.BACKOFF_PENALTY
        log.warning(
            "Rate limited; pausing actions for %ds", Config.BACKOFF_PENALTY // 1000
        )

    # -----------------------------------------------------------------------
    # Scheduling
    # -----------------------------------------------------------------------

    async def _schedule(self, now: int) -> tuple[bool, int]:
        """Run at most one eligible action. Returns (acted, wait_ms)."""
        waits: list[int] = []
        for key in self.scheduler.order(self.config):
            state = self.stats.action(key)
            balance: BalanceResult | None = None

            if self.scheduler.is_long_cycle(key):
                gate = self.scheduler.cycle_wait(self.config, now, state.last_run_at)
                if gate > 0:
                    self._insufficient_streak = 0
                    waits.append(gate)
                    continue
                if now < self._long_cycle_not_before:
                    waits.append(self._long_cycle_not_before - now)
                    continue
                balance = await self.executor.execute(ReadBalance())

            cooldown = await self.executor.execute(ReadCooldown(action_key=key))
            if not cooldown.found:
                log.debug("Button for %s not found", key)
                continue

            decision = self.scheduler.decide(
                key,
                self.config,
                now,
                state.last_run_at,
                cooldown.cooldown_ms,
                balance,
                backoff_until=self.backoff.active_until,
                insufficient_streak=self._insufficient_streak,
            )
            if decision.reason == "balance":
                self._insufficient_streak += 1
                self._long_cycle_not_before = now + decision.wait_ms
                log.info(
                    "%s: balance %d/%d, re-check in %ds",
                    key, balance.current, balance.required, decision.wait_ms // 1000,
                )

            if decision.eligible:
                await self._run_action(key)
                return True, Config.MIN_TICK
            waits.append(decision.wait_ms)

        return False, min(waits) if waits else Config.MAX_TICK

    async def _run_action(self, key: str) -> None:
        """Click, then confirm the target shows the action as used."""
        state = self.stats.action(key)
        clicked_at = self.clock.now_ms()
        result = await self.executor.execute(Click(action_key=key))
        if not result.ok:
            raise create_error(
                "ELEMENT_NOT_FOUND",
                f"Click on {key} failed: {result.detail}",
                at_state=self.fsm.state_name,
            )

        if await self._confirm(key):
            state.last_run_at = clicked_at
            state.run_count += 1
            self._errors = 0
            if self.scheduler.is_long_cycle(key):
                self._insufficient_streak = 0
                self._long_cycle_not_before = 0
            self._save_stats()
            log.info("%s done (run #%d)", key, state.run_count)
        else:
            state.last_run_at = 0
            log.warning(
                "%s not confirmed after %d checks; will re-evaluate",
                key, Config.CONFIRM_ATTEMPTS,
            )

        low, high = Config.POST_ACTION_PAUSE
        await self.clock.sleep(self.rng.uniform(low, high))

    async def _confirm(self, key: str) -> bool:
        for _ in range(Config.CONFIRM_ATTEMPTS):
            await self.clock.sleep(Config.CONFIRM_INTERVAL)
            cooldown = await self.executor.execute(ReadCooldown(action_key=key))
            if cooldown.found and not cooldown.available:
                return True
        return False

    # -----------------------------------------------------------------------
    # Stagnation, persistence, status
    # -----------------------------------------------------------------------

    async def _check_stagnation(self) -> bool:
        progress = await self.executor.execute(ReadProgress())
        now = self.clock.now_ms()
        if progress.value != self._last_progress:
            self._last_progress = progress.value
            self._progress_changed_at = now
            return False
        return (
            progress.value > 0
            and now - self._progress_changed_at >= Config.STAGNATION_WINDOW
        )

    async def _housekeeping(self, now: int) -> None:
        if now >= self._next_persist_at:
            self._next_persist_at = now + Config.PERSIST_INTERVAL
            await self._save_cookies()
            self._save_stats()
        if self.config.log_each and now >= self._next_status_at:
            self._next_status_at = now + self.config.log_each * 1000
            self._log_status(now)

    def _log_status(self, now: int) -> None:
        counts = ", ".join(
            f"{key}={state.run_count}" for key, state in self.stats.actions.items()
        )
        log.info(
            "[%s] state=%s reloads=%d clicks={%s} backoff=%ds progress=%s",
            self.account_id,
            self.fsm.state_name.value,
            self.stats.reload_count,
            counts,
            self.backoff.remaining(now) // 1000,
            self._last_progress,
        )

    def _save_stats(self) -> None:
        self.stats.proxy_cursor = self.allocator.cursor
        try:
            self.store.save_stats(self.stats)
        except OSError as e:
            log.error("Could not save stats: %s", e)

    async def _save_cookies(self) -> None:
        try:
            self.store.save_cookies(await self.connection.cookies())
        except Exception as e:
            log.error("Could not save cookies: %s", e)

    # -----------------------------------------------------------------------
    # Errors
    # -----------------------------------------------------------------------

    async def _handle_error(self, error: Exception) -> None:
        err = classify_error(error, self.fsm.state_name)
        if err.recoverability == Recoverability.FATAL:
            log.error("%s", err)
            self.fsm.to_terminated()
            self._save_stats()
            raise SessionTerminated(f"Unrecoverable error: {err}", cause=err) from error
        if err.recoverability == Recoverability.BACKOFF:
            self._open_backoff(self.clock.now_ms())
            return
        if err.needs_reload:
            log.error("%s", err)
            await self.reload(err.code.lower())
            return

        self._errors += 1
        log.warning("Transient error %d/%d: %s", self._errors, Config.ERROR_THRESHOLD, err)
        if self._errors >= Config.ERROR_THRESHOLD:
            self._errors = 0
            await self.reload("error threshold")

    # -----------------------------------------------------------------------
    # Navigation
    # -----------------------------------------------------------------------

    def _on_navigation_started(self, url: str) -> None:
        if self.fsm.state_name in _NAV_ENTRY_STATES:
            log.debug("Navigating to %s", url)
            self.fsm.to_navigating()

    def _on_navigation_finished(self, url: str) -> None:
        if self.fsm.state_name == SessionStateName.NAVIGATING:
            self.fsm.to_idle()

    async def _navigate(self, url: str, wait_until: str, timeout: int) -> None:
        self._on_navigation_started(url)
        try:
            await self.connection.goto(url, wait_until=wait_until, timeout=timeout)
        finally:
            self._on_navigation_finished(url)

    async def _launch(self) -> None:
        """Create a connection, open the entry page, wait out a login redirect."""
        self.connection = self._connection_factory(self.proxy)
        self.connection.set_navigation_listener(
            self._on_navigation_started, self._on_navigation_finished
        )
        await self.connection.start(self.store.load_cookies())
        self.executor = self._executor_factory(self.connection)
        await self._navigate(self.config.entry_url, "load", Config.NAVIGATION_TIMEOUT)

        if Config.AUTH_PATH_PREFIX in self.connection.url:
            log.warning(
                "Login required; waiting up to %ds", Config.LOGIN_WAIT_TIMEOUT // 1000
            )
            await self.connection.wait_for_navigation(Config.LOGIN_WAIT_TIMEOUT)
            log.info("Logged in")
        await self._save_cookies()

    async def _close_connection(self) -> None:
        if self.connection is None:
            return
        try:
            await self.connection.close()
        except Exception as e:
            log.debug("Connection close failed: %s", e)

    # -----------------------------------------------------------------------
    # Reload
    # -----------------------------------------------------------------------

    async def reload(self, reason: str) -> None:
        """Hard reload. Raises SessionTerminated when recovery is impossible."""
        log.warning("Reloading (%s)", reason)
        self.fsm.to_reloading()
        self.stats.reload_count += 1
        self._save_stats()
        self._reload_config()

        if self.config.rotate_proxy_on_reload and self.config.proxies:
            self.proxy = self.allocator.pick(self.config.proxies)
            log.info("Rotating proxy to %s", self.proxy or "none")
            await self._restart()
        else:
            try:
                await self._soft_reload()
            except Exception as e:
                log.error("Page reload failed, restarting connection: %s", e)
                await self._restart()

        # Let the page's own scripts finish booting before the next tick reads it
        await self.clock.sleep(Config.RELOAD_SETTLE)
        now = self.clock.now_ms()
        self._arm_timers(now)
        if self.fsm.state_name in (SessionStateName.RELOADING, SessionStateName.NAVIGATING):
            self.fsm.to_idle()
        self._save_stats()
        log.info("Reload #%d complete", self.stats.reload_count)

    async def _soft_reload(self) -> None:
        path = (
            self.store.run_dir
            / Config.SCREENSHOT_DIR_NAME
            / f"reload_before_{self.clock.now_ms()}.png"
        )
        try:
            await self.connection.screenshot(path)
        except Exception as e:
            log.debug("Screenshot before reload failed: %s", e)
        await self._save_cookies()
        await self._navigate("about:blank", "load", Config.NAVIGATION_TIMEOUT)
        await self._navigate(self.config.entry_url, "networkidle", Config.NAVIGATION_TIMEOUT)

    async def _restart(self) -> None:
        """Full connection restart, equivalent to a cold start."""
        await self._save_cookies()
        await self._close_connection()
        self.connection = None
        self.executor = None
        try:
            await self._launch()
        except Exception as e:
            log.error("Connection restart failed: %s", e)
            self.fsm.to_terminated()
            self._save_stats()
            await self._close_connection()
            raise SessionTerminated(f"Reload failed: {e}", cause=e) from e

    def _reload_config(self) -> None:
        """Pick up config.json edits between reload cycles."""
        try:
            self.config = self.store.load_config(self.config)
        except OSError as e:
            log.warning("Keeping current config: %s", e)

    def _arm_timers(self, now: int) -> None:
        self._next_reload_at = now + self.config.reload_interval_ms
        self._last_progress = None
        self._progress_changed_at = now
