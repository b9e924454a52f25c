"""Data models for the session keeper.

Enums and models shared across the supervisor, the session controller
and the persistence layer. External JSON (account list, config.json,
stats files) uses camelCase keys; Python attributes stay snake_case.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from config import ACTIONS, Config, validate_account_id


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class SessionStateName(str, Enum):
    """FSM states for the session control loop."""
    IDLE = "IDLE"
    NAVIGATING = "NAVIGATING"
    STUCK = "STUCK"
    BACKOFF = "BACKOFF"
    RELOADING = "RELOADING"
    TERMINATED = "TERMINATED"


class NavigationState(str, Enum):
    """Navigation view of the FSM; STUCK is inferred, never persisted."""
    IDLE = "idle"
    NAVIGATING = "navigating"
    STUCK = "stuck"


class ProxyRotation(str, Enum):
    PER_LAUNCH = "perLaunch"
    SEQUENTIAL = "sequential"


class TargetSignal(str, Enum):
    """Out-of-band signals observed on target responses."""
    RATE_LIMITED = "rate_limited"
    FORBIDDEN = "forbidden"


# ---------------------------------------------------------------------------
# Accounts and configuration
# ---------------------------------------------------------------------------

class ProxyAuth(BaseModel):
    username: str = ""
    password: str = ""


class ProxyDescriptor(CamelModel):
    """Structured proxy as written by enrollment: {serverArg, auth}."""
    server_arg: str
    auth: ProxyAuth | None = None


class Account(CamelModel):
    id: str
    proxy: Union[str, ProxyDescriptor, None] = None
    headless: bool | None = None
    reload_minutes: int | None = None
    refine_hours: float | None = None
    refine_min_minutes: int | None = None
    use_system_chrome: bool = False
    chrome_path: str = ""
    accept_language: str | None = None
    timezone: str | None = None
    cookies_file: str | None = None
    user_data_dir: str | None = None
    overrides: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )

    @field_validator("id")
    @classmethod
    def _valid_id(cls, value: str) -> str:
        err = validate_account_id(value)
        if err:
            raise ValueError(err)
        return value


class SessionConfig(CamelModel):
    """Resolved per-session configuration (config.json in the run dir)."""
    enabled: bool = True
    actions: dict[str, bool] = Field(
        default_factory=lambda: {key: True for key in ACTIONS}
    )
    keep_alive: bool = True
    auto_reload: bool = True
    reload_minutes: int = Field(default=50, ge=1)
    log_each: int = Field(default=300, ge=0)
    headless: bool = False
    slow_mo: int = 0
    engine: Literal["playwright", "patchright"] = "playwright"
    chrome_path: str = ""
    accept_language: str = "en-US,en;q=0.9"
    timezone: str = "Europe/Berlin"
    entry_url: str = Config.ENTRY_URL
    boost_interval_ms: int = Field(default=300_000, ge=0)
    boost_jitter_ms: int = Field(default=15_000, ge=0)
    refine_hours: float = Field(default=8.0, gt=0)
    refine_early_margin_ms: int = Field(default=90_000, ge=0)
    refine_recheck_ms: int = Field(default=60_000, ge=1_000)
    refine_min_minutes: int = Field(default=180, ge=1)
    proxies: list[str] = Field(default_factory=list)
    proxy_rotation: ProxyRotation = ProxyRotation.PER_LAUNCH
    rotate_proxy_on_reload: bool = True
    proxy_cursor: int = Field(default=0, ge=0)
    cookies_file: str | None = None

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    @model_validator(mode="before")
    @classmethod
    def _fold_flat_toggles(cls, data: Any) -> Any:
        """Accept the flat ``autoAC: true`` style alongside ``actions``."""
        if not isinstance(data, dict):
            return data
        flat = {key: data[key] for key in ACTIONS if key in data}
        if not flat:
            return data
        data = {k: v for k, v in data.items() if k not in flat}
        actions = dict(data.get("actions") or {key: True for key in ACTIONS})
        actions.update({key: bool(value) for key, value in flat.items()})
        data["actions"] = actions
        return data

    def is_enabled(self, action_key: str) -> bool:
        return self.enabled and self.actions.get(action_key, False)

    @property
    def cycle_period_ms(self) -> int:
        return int(self.refine_hours * 3_600_000)

    @property
    def reload_interval_ms(self) -> int:
        return self.reload_minutes * 60_000


# ---------------------------------------------------------------------------
# Session state
# ---------------------------------------------------------------------------

class ActionState(BaseModel):
    last_run_at: int = 0
    run_count: int = 0


class SessionStats(BaseModel):
    """Durable per-session counters (stats_<id>.json)."""
    reload_count: int = 0
    actions: dict[str, ActionState] = Field(default_factory=dict)
    proxy_cursor: int = 0

    def action(self, key: str) -> ActionState:
        if key not in self.actions:
            self.actions[key] = ActionState()
        return self.actions[key]

    def to_file(self) -> dict[str, Any]:
        return {
            "reloadCount": self.reload_count,
            "clickCount": {k: s.run_count for k, s in self.actions.items()},
            "lastRunAt": {k: s.last_run_at for k, s in self.actions.items()},
            "proxyCursor": self.proxy_cursor,
        }

    @classmethod
    def from_file(cls, data: dict[str, Any]) -> SessionStats:
        counts = data.get("clickCount") or {}
        last = data.get("lastRunAt") or data.get("lastClick") or {}
        keys = list(dict.fromkeys([*counts, *last]))
        return cls(
            reload_count=int(data.get("reloadCount", 0)),
            actions={
                k: ActionState(
                    last_run_at=int(last.get(k, 0) or 0),
                    run_count=int(counts.get(k, 0) or 0),
                )
                for k in keys
            },
            proxy_cursor=int(data.get("proxyCursor", 0)),
        )


class BackoffWindow(BaseModel):
    """No actions may run while now < active_until. Expires on its own."""
    active_until: int = 0

    def is_active(self, now: int) -> bool:
        return now < self.active_until

    def remaining(self, now: int) -> int:
        return max(0, self.active_until - now)


class ProxyIdentity(BaseModel):
    scheme: str = "http"
    host: str
    port: int
    username: str | None = None
    password: str | None = None

    model_config = {"frozen": True}

    @property
    def server(self) -> str:
        return f"{self.scheme}://{self.host}:{self.port}"

    def to_playwright(self) -> dict[str, str]:
        proxy = {"server": self.server}
        if self.username:
            proxy["username"] = self.username
        if self.password:
            proxy["password"] = self.password
        return proxy

    def __str__(self) -> str:
        auth = f"{self.username}:***@" if self.username else ""
        return f"{self.scheme}://{auth}{self.host}:{self.port}"


class Decision(BaseModel):
    eligible: bool
    wait_ms: int = 0
    reason: str = ""


class FSMState(BaseModel):
    """Lightweight snapshot of the session FSM for status reporting."""
    name: SessionStateName
    since_ms: int
    deadline_ms: int | None = None
    epoch: int = 0


# ---------------------------------------------------------------------------
# Executor protocol: typed commands in, typed results out
# ---------------------------------------------------------------------------

class Click(BaseModel):
    kind: Literal["click"] = "click"
    action_key: str


class ReadCooldown(BaseModel):
    kind: Literal["read_cooldown"] = "read_cooldown"
    action_key: str


class ReadBalance(BaseModel):
    kind: Literal["read_balance"] = "read_balance"


class ReadProgress(BaseModel):
    kind: Literal["read_progress"] = "read_progress"


class KeepAlive(BaseModel):
    kind: Literal["keep_alive"] = "keep_alive"


Command = Union[Click, ReadCooldown, ReadBalance, ReadProgress, KeepAlive]


class ClickResult(BaseModel):
    ok: bool
    detail: str = ""


class CooldownResult(BaseModel):
    """found=False means the locator returned NotFound for the key."""
    found: bool
    available: bool = False
    cooldown_ms: int = 0


class BalanceResult(BaseModel):
    current: int = 0
    required: int = 0

    @property
    def sufficient(self) -> bool:
        return self.current >= self.required


class ProgressResult(BaseModel):
    value: float = 0.0


class Ack(BaseModel):
    ok: bool = True
