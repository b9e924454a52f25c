"""
Action executor: typed commands in, typed results out.

The session controller never touches the page directly. It sends one of
Click / ReadCooldown / ReadBalance / ReadProgress / KeepAlive and gets the
matching result model back. Element lookup sits behind ActionLocator so the
controller does not depend on how buttons are found.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Protocol

from behavior import HumanBehavior
from config import ACTIONS, BALANCE_CURRENT_LABEL, BALANCE_REQUIRED_LABEL, SELECTORS
from models import (
    Ack,
    BalanceResult,
    Click,
    ClickResult,
    Command,
    CooldownResult,
    KeepAlive,
    ProgressResult,
    ReadBalance,
    ReadCooldown,
    ReadProgress,
)

log = logging.getLogger(__name__)

# Disabled button with no readable timer
UNKNOWN_COOLDOWN_MS = 600_000
ACTIVATING_COOLDOWN_MS = 3_000

_MIN_SEC_RE = re.compile(r"(\d+)\s*m.*?(\d+)\s*s", re.IGNORECASE | re.DOTALL)
_SEC_RE = re.compile(r"(\d+)\s*s", re.IGNORECASE)


class ActionExecutor(Protocol):
    async def execute(self, command: Command) -> Any:
        ...


class ActionLocator(Protocol):
    async def locate(self, action_key: str) -> Any | None:
        """Element handle for the action's button, or None when not found."""
        ...


# ---------------------------------------------------------------------------
# Text parsing
# ---------------------------------------------------------------------------

def parse_cooldown_ms(text: str, disabled: bool) -> int:
    """Remaining cooldown shown on a button.

    Enabled buttons have no cooldown. Disabled ones show "Activating…",
    "4m 12s", or "37s"; anything else counts as a long unknown cooldown.
    """
    if not disabled:
        return 0
    if "activating" in text.lower():
        return ACTIVATING_COOLDOWN_MS
    m = _MIN_SEC_RE.search(text)
    if m:
        return (int(m.group(1)) * 60 + int(m.group(2))) * 1000
    s = _SEC_RE.search(text)
    if s:
        return int(s.group(1)) * 1000
    return UNKNOWN_COOLDOWN_MS


def parse_int(text: str | None) -> int:
    digits = re.sub(r"[^0-9]", "", text or "")
    return int(digits) if digits else 0


def parse_number(text: str | None) -> float:
    """Counter text like "1 234,56" → 1234.56. Unreadable → 0.0."""
    cleaned = re.sub(r"\s", "", text or "").replace(",", ".")
    try:
        return float(cleaned)
    except ValueError:
        return 0.0


# ---------------------------------------------------------------------------
# Locator
# ---------------------------------------------------------------------------

_FIND_BUTTON_JS = """
([selector, label]) => {
  const needle = label.toLowerCase().trim();
  for (const el of document.querySelectorAll(selector)) {
    const text = (el.innerText || '').toLowerCase().trim();
    if (text === needle || text.startsWith(needle + ' ') || text.startsWith(needle + '\\n')) {
      const button = el.closest('button');
      if (button) return button;
    }
  }
  return null;
}
"""


class TextLabelLocator:
    """Finds an action's button by the visible label text inside it."""

    def __init__(self, page: Any, labels: dict[str, str] | None = None) -> None:
        self.page = page
        if labels is None:
            labels = {key: action["label"] for key, action in ACTIONS.items()}
        self.labels = labels

    async def locate(self, action_key: str) -> Any | None:
        label = self.labels.get(action_key)
        if not label:
            return None
        handle = await self.page.evaluate_handle(
            _FIND_BUTTON_JS, [SELECTORS["action_text"], label]
        )
        element = handle.as_element()
        if element is None:
            await handle.dispose()
        return element


# ---------------------------------------------------------------------------
# Page executor
# ---------------------------------------------------------------------------

_READ_BALANCE_JS = """
([selector, currentLabel, requiredLabel]) => {
  const labels = [...document.querySelectorAll(selector)];
  const read = (name) => {
    const el = labels.find(l => (l.innerText || '').includes(name));
    return el && el.nextElementSibling ? el.nextElementSibling.innerText : '';
  };
  return [read(currentLabel), read(requiredLabel)];
}
"""

_READ_PROGRESS_JS = """
(selector) => {
  const el = document.querySelector(selector);
  return el ? el.textContent : '';
}
"""

_KEEP_ALIVE_JS = """
() => { fetch('/favicon.ico', {cache: 'no-store', mode: 'no-cors'}).catch(() => {}); }
"""


class PageActionExecutor:
    """Runs commands against a live Playwright page."""

    def __init__(
        self,
        page: Any,
        locator: ActionLocator | None = None,
        behavior: HumanBehavior | None = None,
    ) -> None:
        self.page = page
        self.locator = locator or TextLabelLocator(page)
        self.behavior = behavior or HumanBehavior()

    async def execute(self, command: Command) -> Any:
        if isinstance(command, Click):
            return await self._click(command.action_key)
        if isinstance(command, ReadCooldown):
            return await self._read_cooldown(command.action_key)
        if isinstance(command, ReadBalance):
            return await self._read_balance()
        if isinstance(command, ReadProgress):
            return await self._read_progress()
        if isinstance(command, KeepAlive):
            return await self._keep_alive()
        raise TypeError(f"Unknown command: {command!r}")

    async def _click(self, action_key: str) -> ClickResult:
        element = await self.locator.locate(action_key)
        if element is None:
            return ClickResult(ok=False, detail="not found")
        if await element.is_disabled():
            return ClickResult(ok=False, detail="disabled")
        if not await self.behavior.click_element(self.page, element):
            return ClickResult(ok=False, detail="not visible")
        return ClickResult(ok=True)

    async def _read_cooldown(self, action_key: str) -> CooldownResult:
        element = await self.locator.locate(action_key)
        if element is None:
            return CooldownResult(found=False)
        disabled = await element.is_disabled()
        text = await element.inner_text()
        return CooldownResult(
            found=True,
            available=not disabled,
            cooldown_ms=parse_cooldown_ms(text, disabled),
        )

    async def _read_balance(self) -> BalanceResult:
        current, required = await self.page.evaluate(
            _READ_BALANCE_JS,
            [SELECTORS["balance_label"], BALANCE_CURRENT_LABEL, BALANCE_REQUIRED_LABEL],
        )
        return BalanceResult(current=parse_int(current), required=parse_int(required))

    async def _read_progress(self) -> ProgressResult:
        text = await self.page.evaluate(_READ_PROGRESS_JS, SELECTORS["progress_counter"])
        return ProgressResult(value=parse_number(text))

    async def _keep_alive(self) -> Ack:
        await self.behavior.random_micro_movement(self.page)
        await self.page.evaluate(_KEEP_ALIVE_JS)
        log.debug("Keep-alive ping")
        return Ack()
