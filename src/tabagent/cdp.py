"""
Remote debugging transport - Talk to a Chrome the user already runs.

Chrome must be started with --remote-debugging-port. Page targets are
listed over the plain HTTP endpoint (/json/list); a tab connection is made
with Playwright's connect_over_cdp plus a raw CDP session on the matching
page, which gives us script evaluation, navigation, screenshots, synthetic
input and dialog notifications.

Everything the Browser Session Manager needs is expressed by the
TabConnection protocol so tests can substitute an in-memory fake.
"""

import logging
from collections.abc import Callable
from typing import Any, Protocol

import httpx

from tabagent.types import BrowserTab

logger = logging.getLogger(__name__)

LIST_TIMEOUT = 5.0

DialogHandler = Callable[[Any], None]


class CDPError(Exception):
    """Chrome is unreachable or refused a request."""
    pass


class NavigationTimeout(TimeoutError):
    """The load event did not fire within the allotted time."""
    pass


class TabConnection(Protocol):
    """A live connection to one browser tab."""

    def evaluate(self, expression: str, arg: Any = None) -> Any: ...

    def send(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]: ...

    def navigate(self, url: str, timeout_ms: int) -> None: ...

    def capture_screenshot(self) -> str: ...

    def set_dialog_handler(self, handler: DialogHandler) -> None: ...

    def enable_domains(self) -> None: ...

    def close(self) -> None: ...


class PlaywrightTabConnection:
    """TabConnection backed by a Playwright page and its CDP session."""

    def __init__(self, page: Any, cdp_session: Any) -> None:
        self._page = page
        self._cdp = cdp_session
        self._dialog_handler: DialogHandler | None = None

    def evaluate(self, expression: str, arg: Any = None) -> Any:
        return self._page.evaluate(expression, arg)

    def send(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        return self._cdp.send(method, params or {})

    def navigate(self, url: str, timeout_ms: int) -> None:
        from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

        try:
            self._page.goto(url, wait_until="load", timeout=timeout_ms)
        except PlaywrightTimeoutError as e:
            raise NavigationTimeout(str(e)) from e

    def capture_screenshot(self) -> str:
        return self.send("Page.captureScreenshot", {"format": "png"})["data"]

    def set_dialog_handler(self, handler: DialogHandler) -> None:
        """Install the dialog handler, replacing any earlier one."""
        if self._dialog_handler is not None:
            self._page.remove_listener("dialog", self._dialog_handler)
        self._dialog_handler = handler
        self._page.on("dialog", handler)

    def enable_domains(self) -> None:
        for domain in ("Page", "Runtime", "DOM"):
            self.send(f"{domain}.enable")

    def close(self) -> None:
        if self._dialog_handler is not None:
            self._page.remove_listener("dialog", self._dialog_handler)
            self._dialog_handler = None
        self._cdp.detach()


class CDPTransport:
    """
    Lists page targets and opens tab connections.

    One Playwright browser connection is shared by all tab connections and
    re-established when it drops. Closing the transport disconnects from
    Chrome without closing the user's browser.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 9222,
        http_client: httpx.Client | None = None,
    ) -> None:
        self.host = host
        self.port = port
        self._http = http_client or httpx.Client(timeout=LIST_TIMEOUT)
        self._playwright: Any = None
        self._browser: Any = None

    @property
    def endpoint(self) -> str:
        return f"http://{self.host}:{self.port}"

    def list_targets(self) -> list[BrowserTab]:
        """List the page-type targets of the browser."""
        try:
            response = self._http.get(f"{self.endpoint}/json/list")
            response.raise_for_status()
            targets = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise CDPError(
                f"Cannot connect to Chrome on {self.host}:{self.port}.\n"
                f"Make sure Chrome is running with --remote-debugging-port={self.port}\n"
                f"Error: {e}"
            ) from e

        return [
            BrowserTab(
                id=t["id"],
                title=t.get("title") or "(untitled)",
                url=t.get("url", ""),
                debugger_url=t.get("webSocketDebuggerUrl"),
            )
            for t in targets
            if t.get("type") == "page"
        ]

    def connect(self, tab: BrowserTab) -> PlaywrightTabConnection:
        """Open a connection to the page whose target id is tab.id."""
        browser = self._ensure_browser()
        for context in browser.contexts:
            for page in context.pages:
                session = context.new_cdp_session(page)
                info = session.send("Target.getTargetInfo")
                if info.get("targetInfo", {}).get("targetId") == tab.id:
                    logger.info(f"Connected to tab {tab.id}: {tab.title}")
                    return PlaywrightTabConnection(page, session)
                session.detach()
        raise CDPError(f"Tab {tab.id} is not available in the browser")

    def _ensure_browser(self) -> Any:
        if self._browser is not None and self._browser.is_connected():
            return self._browser

        try:
            from playwright.sync_api import sync_playwright
        except ImportError as e:
            raise ImportError(
                "Playwright is required for browser control. "
                "Install it with: pip install playwright"
            ) from e

        if self._playwright is None:
            self._playwright = sync_playwright().start()
        try:
            self._browser = self._playwright.chromium.connect_over_cdp(self.endpoint)
        except Exception as e:
            raise CDPError(f"Cannot attach to Chrome at {self.endpoint}: {e}") from e
        logger.info(f"Connected to Chrome at {self.endpoint}")
        return self._browser

    def close(self) -> None:
        """Drop the Playwright driver; the user's Chrome keeps running."""
        if self._playwright is not None:
            self._playwright.stop()
        self._playwright = None
        self._browser = None
        self._http.close()
