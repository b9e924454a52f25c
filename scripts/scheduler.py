"""Action scheduling: which action, if any, may run right now.

decide() is a pure function of configuration, the current time, the
action's last run, and what the target reports (cooldown, balance). All
randomness comes from the injected random source so schedules can be
replayed in tests.

Two kinds of action:

- standard: repeatable once the target shows it off cooldown and the
  jittered interval since the last run has passed
- long-cycle: visited only once its multi-hour window opens (slightly
  early, by the configured margin) and the resource balance covers the
  requirement
"""

from __future__ import annotations

import random

from config import ACTIONS, LONG_CYCLE_ACTION, Config
from models import BalanceResult, Decision, SessionConfig


def _interval(action_key: str, config: SessionConfig) -> tuple[int, int]:
    """(base interval, jitter) in ms for a standard action."""
    action = ACTIONS.get(action_key, {})
    return (
        action.get("interval_ms", config.boost_interval_ms),
        action.get("jitter_ms", config.boost_jitter_ms),
    )


def is_long_cycle(action_key: str) -> bool:
    return bool(ACTIONS.get(action_key, {}).get("long_cycle"))


def cycle_opens_at(config: SessionConfig, last_run_at: int) -> int:
    """Earliest time the long-cycle action may be visited."""
    return last_run_at + config.cycle_period_ms - config.refine_early_margin_ms


def decide(
    action_key: str,
    config: SessionConfig,
    now: int,
    last_run_at: int,
    target_cooldown_ms: int,
    balance: BalanceResult | None = None,
    *,
    backoff_until: int = 0,
    rng: random.Random | None = None,
    insufficient_streak: int = 0,
) -> Decision:
    """Decide whether ``action_key`` may run at ``now``.

    Args:
        target_cooldown_ms: remaining cooldown reported by the target, 0 when
            the target shows the action as available
        balance: current/required resource balance, long-cycle action only
        backoff_until: end of the active backoff window (0 = none)
        insufficient_streak: consecutive long-cycle checks that found the
            balance short, used to stretch the re-check interval
    """
    if now < backoff_until:
        return Decision(eligible=False, wait_ms=backoff_until - now, reason="backoff")

    if is_long_cycle(action_key):
        return _decide_long_cycle(
            config, now, last_run_at, target_cooldown_ms, balance, insufficient_streak
        )

    rng = rng or random
    base, jitter = _interval(action_key, config)
    gap = base + (rng.uniform(-jitter, jitter) if jitter else 0)
    since = now - last_run_at
    remaining_gap = max(0, int(gap - since))

    if target_cooldown_ms <= 0 and since > gap:
        return Decision(eligible=True, reason="ready")
    if target_cooldown_ms > 0:
        return Decision(
            eligible=False,
            wait_ms=max(target_cooldown_ms, remaining_gap),
            reason="cooldown",
        )
    return Decision(eligible=False, wait_ms=max(1, remaining_gap), reason="interval")


def _decide_long_cycle(
    config: SessionConfig,
    now: int,
    last_run_at: int,
    target_cooldown_ms: int,
    balance: BalanceResult | None,
    insufficient_streak: int,
) -> Decision:
    opens_at = cycle_opens_at(config, last_run_at)
    if now < opens_at:
        return Decision(eligible=False, wait_ms=opens_at - now, reason="cycle")

    if balance is None or not balance.sufficient:
        if insufficient_streak >= Config.REFINE_SHORT_RECHECKS:
            wait = config.refine_min_minutes * 60_000
        else:
            wait = config.refine_recheck_ms
        return Decision(eligible=False, wait_ms=wait, reason="balance")

    if target_cooldown_ms > 0:
        return Decision(eligible=False, wait_ms=target_cooldown_ms, reason="cooldown")

    return Decision(eligible=True, reason="ready")


class ActionScheduler:
    """Per-session scheduler: fixed key order plus the injected random source."""

    def __init__(self, rng: random.Random | None = None) -> None:
        self._rng = rng or random.Random()

    @property
    def rng(self) -> random.Random:
        return self._rng

    @staticmethod
    def order(config: SessionConfig) -> list[str]:
        """Enabled action keys in their fixed evaluation order."""
        return [key for key in ACTIONS if config.is_enabled(key)]

    @staticmethod
    def is_long_cycle(action_key: str) -> bool:
        return is_long_cycle(action_key)

    @staticmethod
    def long_cycle_key() -> str:
        return LONG_CYCLE_ACTION

    @staticmethod
    def cycle_wait(config: SessionConfig, now: int, last_run_at: int) -> int:
        """Time until the long-cycle window opens; 0 once it is open."""
        return max(0, cycle_opens_at(config, last_run_at) - now)

    def decide(
        self,
        action_key: str,
        config: SessionConfig,
        now: int,
        last_run_at: int,
        target_cooldown_ms: int,
        balance: BalanceResult | None = None,
        *,
        backoff_until: int = 0,
        insufficient_streak: int = 0,
    ) -> Decision:
        return decide(
            action_key,
            config,
            now,
            last_run_at,
            target_cooldown_ms,
            balance,
            backoff_until=backoff_until,
            rng=self._rng,
            insufficient_streak=insufficient_streak,
        )
