"""
Target connection: one persistent browser context per session.

Engines follow the BrowserTier ABC pattern:
  playwright: vanilla Playwright Chromium (default)
  patchright: patched Chromium, drop-in replacement for stealthier runs

The connection owns the page, forwards main-frame navigation start/finish
events to a listener, and turns interesting response statuses (429, 403)
into queued TargetSignals that the session controller drains each tick.
"""

from __future__ import annotations

import abc
import logging
from pathlib import Path
from typing import Any, Callable

from config import IGNORED_PAGE_ERRORS, IGNORED_REQUEST_FAILURES, Config
from models import ProxyIdentity, SessionConfig, TargetSignal

log = logging.getLogger(__name__)

NavigationListener = Callable[[str], None]

# Resource types whose status codes reflect the target's API, not page assets
_API_RESOURCE_TYPES = frozenset({"fetch", "xhr", "document"})

LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-blink-features=AutomationControlled",
]


# ---------------------------------------------------------------------------
# BrowserTier ABC
# ---------------------------------------------------------------------------

class BrowserTier(abc.ABC):
    """Lifecycle of one browser engine: detect() → init() → teardown()."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        ...

    @abc.abstractmethod
    def detect(self) -> bool:
        """Check if this engine's package is importable."""
        ...

    @abc.abstractmethod
    async def start(self) -> Any:
        """Start the driver. Returns a handle exposing ``.chromium``."""
        ...

    async def init(
        self,
        profile_dir: Path,
        config: SessionConfig,
        proxy: ProxyIdentity | None,
        executable_path: str = "",
        headless: bool = False,
    ) -> tuple[Any, Any]:
        """Launch a persistent context. Returns (driver_handle, context)."""
        handle = await self.start()
        opts: dict[str, Any] = {
            "headless": headless,
            "slow_mo": config.slow_mo or None,
            "viewport": Config.DEFAULT_VIEWPORT,
            "locale": config.accept_language.split(",")[0],
            "timezone_id": config.timezone,
            "extra_http_headers": {"Accept-Language": config.accept_language},
            "args": [*LAUNCH_ARGS, "--window-size=1920,1080"],
        }
        if executable_path:
            opts["executable_path"] = executable_path
        if proxy:
            opts["proxy"] = proxy.to_playwright()
        opts.update(self.context_options())
        try:
            context = await handle.chromium.launch_persistent_context(
                str(profile_dir), **opts
            )
        except Exception:
            await handle.stop()
            raise
        return handle, context

    def context_options(self) -> dict[str, Any]:
        return {}

    async def teardown(self, handle: Any, context: Any) -> None:
        try:
            await context.close()
        except Exception as e:
            log.debug("Context close failed: %s", e)
        try:
            await handle.stop()
        except Exception as e:
            log.debug("Driver stop failed: %s", e)


class PlaywrightTier(BrowserTier):
    """Vanilla Playwright Chromium."""

    @property
    def name(self) -> str:
        return "playwright"

    def detect(self) -> bool:
        try:
            import playwright  # noqa: F401
            return True
        except ImportError:
            return False

    async def start(self) -> Any:
        from playwright.async_api import async_playwright
        return await async_playwright().start()

    def context_options(self) -> dict[str, Any]:
        return {"user_agent": Config.DEFAULT_USER_AGENT}


class PatchrightTier(BrowserTier):
    """Patchright: patched Chromium; keeps its own default user agent."""

    @property
    def name(self) -> str:
        return "patchright"

    def detect(self) -> bool:
        try:
            import patchright  # noqa: F401
            return True
        except ImportError:
            return False

    async def start(self) -> Any:
        from patchright.async_api import async_playwright
        return await async_playwright().start()


TIERS: dict[str, BrowserTier] = {
    "playwright": PlaywrightTier(),
    "patchright": PatchrightTier(),
}


# ---------------------------------------------------------------------------
# Target connection
# ---------------------------------------------------------------------------

class TargetConnection:
    """One browser context + page bound to a session's profile and proxy."""

    def __init__(
        self,
        profile_dir: Path,
        config: SessionConfig,
        proxy: ProxyIdentity | None = None,
        *,
        headless: bool | None = None,
        executable_path: str = "",
    ) -> None:
        self.profile_dir = Path(profile_dir)
        self.config = config
        self.proxy = proxy
        self.headless = config.headless if headless is None else headless
        self.executable_path = executable_path or config.chrome_path
        self._tier = TIERS[config.engine]
        self._handle: Any = None
        self._context: Any = None
        self._page: Any = None
        self._signals: list[TargetSignal] = []
        self._on_nav_start: NavigationListener | None = None
        self._on_nav_done: NavigationListener | None = None

    @property
    def page(self) -> Any:
        if self._page is None:
            raise RuntimeError("Target connection is not started.")
        return self._page

    @property
    def is_running(self) -> bool:
        return self._page is not None

    @property
    def url(self) -> str:
        return self._page.url if self._page is not None else ""

    def set_navigation_listener(
        self, on_start: NavigationListener, on_done: NavigationListener
    ) -> None:
        self._on_nav_start = on_start
        self._on_nav_done = on_done

    async def start(self, cookies: list[dict] | None = None) -> None:
        if not self._tier.detect():
            raise RuntimeError(f"Browser engine '{self._tier.name}' is not installed.")
        self.profile_dir.mkdir(parents=True, exist_ok=True)
        log.info(
            "Launching %s (headless=%s, proxy=%s)",
            self._tier.name, self.headless, self.proxy or "none",
        )
        self._handle, self._context = await self._tier.init(
            self.profile_dir,
            self.config,
            self.proxy,
            executable_path=self.executable_path,
            headless=self.headless,
        )
        if cookies:
            try:
                await self._context.add_cookies(cookies)
            except Exception as e:
                log.warning("Could not restore %d cookies: %s", len(cookies), e)
        pages = self._context.pages
        self._page = pages[0] if pages else await self._context.new_page()
        self._page.set_default_timeout(Config.NAVIGATION_TIMEOUT)
        self._attach_listeners(self._page)

    def _attach_listeners(self, page: Any) -> None:
        page.on("response", self._on_response)
        page.on("request", self._on_request)
        page.on("domcontentloaded", self._on_loaded)
        page.on("pageerror", self._on_page_error)
        page.on("requestfailed", self._on_request_failed)

    # -- Event handlers ---------------------------------------------------

    def _on_request(self, request: Any) -> None:
        if (
            self._on_nav_start
            and request.is_navigation_request()
            and request.frame == self._page.main_frame
        ):
            self._on_nav_start(request.url)

    def _on_loaded(self, page: Any) -> None:
        if self._on_nav_done:
            self._on_nav_done(page.url)

    def _on_response(self, response: Any) -> None:
        if response.request.resource_type not in _API_RESOURCE_TYPES:
            return
        if response.status == Config.RATE_LIMIT_STATUS:
            log.warning("429 Too Many Requests from %s", response.url)
            self._signals.append(TargetSignal.RATE_LIMITED)
        elif response.status == Config.FORBIDDEN_STATUS:
            log.warning("403 Forbidden from %s", response.url)
            self._signals.append(TargetSignal.FORBIDDEN)

    def _on_page_error(self, error: Any) -> None:
        if not IGNORED_PAGE_ERRORS.search(str(error)):
            log.error("JS error: %s", error)

    def _on_request_failed(self, request: Any) -> None:
        failure = request.failure or ""
        if failure not in IGNORED_REQUEST_FAILURES:
            log.warning("Request failed: %s – %s", request.url, failure)

    # -- Operations ---------------------------------------------------------

    def drain_signals(self) -> list[TargetSignal]:
        signals, self._signals = self._signals, []
        return signals

    async def goto(
        self,
        url: str,
        wait_until: str = "networkidle",
        timeout: int = Config.NAVIGATION_TIMEOUT,
    ) -> None:
        await self.page.goto(url, wait_until=wait_until, timeout=timeout)

    async def wait_for_navigation(self, timeout: int) -> None:
        await self.page.wait_for_load_state("networkidle", timeout=timeout)
        await self.page.wait_for_url(
            lambda u: Config.AUTH_PATH_PREFIX not in u, timeout=timeout
        )

    async def cookies(self) -> list[dict]:
        if self._context is None:
            return []
        return await self._context.cookies()

    async def screenshot(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        await self.page.screenshot(path=str(path))

    async def close(self) -> None:
        if self._context is None:
            return
        log.info("Closing browser")
        try:
            await self._tier.teardown(self._handle, self._context)
        finally:
            self._handle = None
            self._context = None
            self._page = None
