"""
Browser Session Manager - One live connection to one Chrome tab.

The manager is a two-state machine:

- DETACHED (initial): only list_tabs() and attach() are meaningful.
- ATTACHED: a tab connection exists, the Page/Runtime/DOM domains are
  enabled and a dialog handler auto-accepts beforeunload/alert/confirm
  dialogs so they never block automation.

Remote debugging connections are fragile (a navigation can swap the tab's
target, the websocket can drop), so every action first checks liveness with
a trivial evaluation. On failure it re-lists tabs, prefers the tab with the
previously attached id, falls back to the first tab, reconnects and carries
on with the original action. Only when that fails does the action raise
ReconnectError, leaving the manager DETACHED.

Actions return human-readable strings. Resolution misses come back as
"ERROR: ..." text rather than exceptions so the model can simply try a
different descriptor.
"""

import base64
import logging
import re
import time
from collections.abc import Callable
from enum import Enum
from pathlib import Path
from typing import Any

from tabagent.cdp import CDPTransport, NavigationTimeout, TabConnection
from tabagent.config import BrowserConfig
from tabagent.resolver import ElementKind, ElementResolver
from tabagent.types import BrowserTab

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "\n\n[... truncated, page has more content]"

# Canonical key name -> (key, code, windows virtual key code)
KEY_MAP: dict[str, tuple[str, str, int]] = {
    "enter": ("Enter", "Enter", 13),
    "tab": ("Tab", "Tab", 9),
    "escape": ("Escape", "Escape", 27),
    "backspace": ("Backspace", "Backspace", 8),
    "arrowdown": ("ArrowDown", "ArrowDown", 40),
    "arrowup": ("ArrowUp", "ArrowUp", 38),
    "arrowleft": ("ArrowLeft", "ArrowLeft", 37),
    "arrowright": ("ArrowRight", "ArrowRight", 39),
}

_SCHEME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*://")


class BrowserState(Enum):
    """Connection state of the session manager."""
    DETACHED = "detached"
    ATTACHED = "attached"


class BrowserError(Exception):
    """Base error for browser session failures."""
    pass


class NotAttachedError(BrowserError):
    """An action was requested while no tab is attached."""
    pass


class ReconnectError(BrowserError):
    """The connection died and could not be re-established."""
    pass


class TabNotFoundError(BrowserError):
    """The requested tab does not exist."""
    pass


def key_event_params(key: str) -> tuple[str, str, int]:
    """Map a key name to its (key, code, keyCode) triple; unknown names pass through."""
    return KEY_MAP.get(key.lower(), (key, key, 0))


def normalize_url(url: str) -> str:
    """Prefix https:// when the URL carries no scheme."""
    url = url.strip()
    if not _SCHEME_RE.match(url):
        return "https://" + url
    return url


class BrowserSession:
    """
    Owns the single attached tab and every primitive browser action.

    The transport supplies tab listings and connections; nothing here knows
    about websockets or Playwright.
    """

    def __init__(
        self,
        transport: CDPTransport,
        config: BrowserConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.transport = transport
        self.config = config or BrowserConfig()
        self._sleep = sleep
        self._connection: TabConnection | None = None
        self._tab: BrowserTab | None = None

    @property
    def state(self) -> BrowserState:
        return BrowserState.ATTACHED if self._connection is not None else BrowserState.DETACHED

    def is_connected(self) -> bool:
        return self._connection is not None

    def tab_info(self) -> BrowserTab | None:
        """The attached tab as of the last attach/navigation."""
        return self._tab

    # -- lifecycle ---------------------------------------------------------

    def list_tabs(self) -> list[BrowserTab]:
        return self.transport.list_targets()

    def attach(self, tab: int | str) -> str:
        """Attach to a tab by index (into list_tabs()) or by target id."""
        tabs = self.list_tabs()
        if not tabs:
            raise TabNotFoundError("No tabs found in Chrome.")

        target: BrowserTab | None = None
        if isinstance(tab, int):
            if 0 <= tab < len(tabs):
                target = tabs[tab]
        else:
            target = next((t for t in tabs if t.id == tab), None)

        if target is None:
            listing = "\n".join(f"  [{i}] {t.title} - {t.url}" for i, t in enumerate(tabs))
            raise TabNotFoundError(f"Tab not found. Available tabs:\n{listing}")

        self.detach()
        self._connection = self._open(target)
        self._tab = target
        logger.info(f"Attached to tab {target.id}: {target.title}")
        return f'Attached to: "{target.title}" ({target.url})'

    def detach(self) -> None:
        """Close the current connection, if any. Close errors are ignored."""
        if self._connection is not None:
            try:
                self._connection.close()
            except Exception as e:
                logger.debug(f"Ignoring error while closing tab connection: {e}")
        self._connection = None
        self._tab = None

    def close(self) -> None:
        self.detach()
        self.transport.close()

    def _open(self, tab: BrowserTab) -> TabConnection:
        connection = self.transport.connect(tab)
        connection.enable_domains()
        connection.set_dialog_handler(self._accept_dialog)
        return connection

    @staticmethod
    def _accept_dialog(dialog: Any) -> None:
        # Fire and forget: the dialog may already be gone.
        try:
            dialog.accept()
        except Exception as e:
            logger.debug(f"Dialog accept failed: {e}")

    def _ensure_connected(self) -> TabConnection:
        """Return a live connection, reconnecting to the same tab if needed."""
        if self._connection is None:
            raise NotAttachedError(
                "Not connected to any Chrome tab. Use chrome_list_tabs and chrome_attach first."
            )

        try:
            self._connection.evaluate("1")
            return self._connection
        except Exception as e:
            logger.warning(f"Tab connection lost ({e}), reconnecting...")

        previous = self._tab
        if previous is None:
            self.detach()
            raise ReconnectError("Lost connection to Chrome tab. Use /tabs and /attach to reconnect.")

        try:
            tabs = self.list_tabs()
            # Tab ids can change across navigations; fall back to the first tab.
            tab = next((t for t in tabs if t.id == previous.id), None)
            if tab is None and tabs:
                tab = tabs[0]
            if tab is None:
                raise TabNotFoundError("Tab no longer exists")

            self.detach()
            self._connection = self._open(tab)
            self._tab = tab
        except Exception as e:
            self.detach()
            raise ReconnectError(
                f"Lost connection to Chrome tab and could not reconnect: {e}. "
                "Use chrome_list_tabs and chrome_attach to re-attach."
            ) from e

        logger.info(f"Reconnected to tab {tab.id}: {tab.title}")
        return self._connection

    # -- actions -----------------------------------------------------------

    def navigate(self, url: str) -> str:
        connection = self._ensure_connected()
        url = normalize_url(url)

        try:
            connection.navigate(url, self.config.navigation_timeout_ms)
        except NavigationTimeout:
            # Slow or partial loads are still usable.
            logger.info(f"Load event for {url} timed out; continuing")

        try:
            info = connection.evaluate(
                "() => ({ title: document.title, url: window.location.href })"
            )
        except Exception as e:
            logger.warning(f"Could not refresh tab info after navigation: {e}")
        else:
            if info and self._tab is not None:
                self._tab = BrowserTab(
                    id=self._tab.id,
                    title=info.get("title", self._tab.title),
                    url=info.get("url", self._tab.url),
                    debugger_url=self._tab.debugger_url,
                )
        return f"Navigated to: {url}"

    def get_page_text(self) -> str:
        """Visible text plus a summary of interactive elements, truncated."""
        connection = self._ensure_connected()
        output = connection.evaluate(PAGE_TEXT_SCRIPT)
        if not output:
            return "Could not extract page text."

        limit = self.config.page_text_limit
        if len(output) > limit:
            output = output[:limit] + TRUNCATION_MARKER
        return output

    def screenshot(self, path: str | Path) -> str:
        connection = self._ensure_connected()
        data = connection.capture_screenshot()
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(base64.b64decode(data))
        return f"Screenshot saved to: {path}"

    def click(self, descriptor: str) -> str:
        connection = self._ensure_connected()
        resolution = ElementResolver(connection.evaluate).resolve(descriptor, ElementKind.CLICKABLE)
        if resolution is None:
            return f"ERROR: Could not find element matching: {descriptor}"

        clicked = connection.evaluate(CLICK_SCRIPT, resolution.element.selector)
        if not clicked:
            return f"ERROR: Element matching {descriptor!r} disappeared before it could be clicked"
        text = (clicked.get("text") or "")[:80]
        return f'Clicked: {clicked.get("tag", "")} "{text}"'

    def type_text(self, descriptor: str, text: str) -> str:
        """
        Focus an input or contenteditable and type into it.

        Text goes in twice: once as real key events (for frameworks that
        listen to keyboard input), then through a backstop that sets the
        value directly and fires input/change (for frameworks that ignore
        synthetic keys).
        """
        connection = self._ensure_connected()
        resolution = ElementResolver(connection.evaluate).resolve(descriptor, ElementKind.TYPEABLE)
        if resolution is None:
            return f"ERROR: Could not find input matching: {descriptor}"

        element = resolution.element
        rich_text = element.is_rich_text
        focused = connection.evaluate(
            FOCUS_AND_CLEAR_SCRIPT, {"selector": element.selector, "richText": rich_text}
        )
        if not focused:
            return f"ERROR: Input matching {descriptor!r} disappeared before it could be focused"

        for char in text:
            connection.send("Input.dispatchKeyEvent", {
                "type": "keyDown",
                "text": char,
                "key": char,
                "unmodifiedText": char,
            })
            connection.send("Input.dispatchKeyEvent", {"type": "keyUp", "key": char})

        backstop = FILL_RICH_TEXT_SCRIPT if rich_text else SET_VALUE_SCRIPT
        connection.evaluate(backstop, {"selector": element.selector, "text": text})

        snippet = text[:80] + ("..." if len(text) > 80 else "")
        return f'Typed "{snippet}" into {element.label}'

    def scroll(self, direction: str, amount: int | None = None) -> str:
        if direction not in ("up", "down"):
            raise ValueError(f"direction must be 'up' or 'down', got {direction!r}")
        connection = self._ensure_connected()
        pixels = amount or 500
        delta = pixels if direction == "down" else -pixels
        connection.evaluate("(delta) => window.scrollBy(0, delta)", delta)
        return f"Scrolled {direction} by {pixels}px"

    def press_key(self, key: str) -> str:
        connection = self._ensure_connected()
        name, code, key_code = key_event_params(key)
        for event_type in ("keyDown", "keyUp"):
            connection.send("Input.dispatchKeyEvent", {
                "type": event_type,
                "key": name,
                "code": code,
                "windowsVirtualKeyCode": key_code,
            })
        return f"Pressed key: {key}"

    def wait(self, ms: int) -> str:
        self._sleep(ms / 1000)
        return f"Waited {ms}ms"


PAGE_TEXT_SCRIPT = """
() => {
    const lines = [];
    const walker = document.createTreeWalker(document.body, NodeFilter.SHOW_TEXT, {
        acceptNode(node) {
            const parent = node.parentElement;
            if (!parent) return NodeFilter.FILTER_REJECT;
            if (['SCRIPT', 'STYLE', 'NOSCRIPT'].includes(parent.tagName)) {
                return NodeFilter.FILTER_REJECT;
            }
            const style = window.getComputedStyle(parent);
            if (style.display === 'none' || style.visibility === 'hidden') {
                return NodeFilter.FILTER_REJECT;
            }
            return node.textContent.trim() ? NodeFilter.FILTER_ACCEPT : NodeFilter.FILTER_REJECT;
        }
    });
    let node;
    while ((node = walker.nextNode())) {
        lines.push(node.textContent.trim());
    }

    const interactive = [];
    document.querySelectorAll('button, [role="button"], input[type="submit"]').forEach(b => {
        const text = (b.textContent || '').trim() || b.getAttribute('aria-label') || '';
        if (text) interactive.push('Button: ' + text);
    });
    Array.from(document.querySelectorAll('a[href]')).slice(0, 15).forEach(a => {
        const text = (a.textContent || '').trim();
        if (text) interactive.push('Link: ' + text + ' -> ' + (a.getAttribute('href') || ''));
    });
    document.querySelectorAll('input, textarea, select').forEach(inp => {
        const label = inp.getAttribute('aria-label') || inp.getAttribute('placeholder')
            || inp.getAttribute('name') || inp.getAttribute('type') || 'input';
        interactive.push('Input: ' + label);
    });

    let output = '=== Page: ' + document.title + ' ===\\n';
    output += 'URL: ' + window.location.href + '\\n\\n';
    output += '--- Page Text ---\\n' + lines.join('\\n');
    if (interactive.length > 0) {
        output += '\\n\\n--- Interactive Elements ---\\n' + interactive.join('\\n');
    }
    return output;
}
"""

CLICK_SCRIPT = """
(selector) => {
    const el = document.querySelector(selector);
    if (!el) return null;
    el.click();
    return { tag: el.tagName || '', text: (el.textContent || '').trim() };
}
"""

FOCUS_AND_CLEAR_SCRIPT = """
(args) => {
    const el = document.querySelector(args.selector);
    if (!el) return false;
    el.focus();
    el.click();
    if (args.richText) {
        el.innerHTML = '';
    } else if ('value' in el) {
        el.value = '';
    }
    return true;
}
"""

SET_VALUE_SCRIPT = """
(args) => {
    const el = document.querySelector(args.selector);
    if (!el || !('value' in el)) return false;
    let proto = null;
    if (el instanceof HTMLTextAreaElement) proto = HTMLTextAreaElement.prototype;
    else if (el instanceof HTMLInputElement) proto = HTMLInputElement.prototype;
    else if (el instanceof HTMLSelectElement) proto = HTMLSelectElement.prototype;
    const descriptor = proto && Object.getOwnPropertyDescriptor(proto, 'value');
    if (descriptor && descriptor.set) {
        descriptor.set.call(el, args.text);
    } else {
        el.value = args.text;
    }
    el.dispatchEvent(new Event('input', { bubbles: true }));
    el.dispatchEvent(new Event('change', { bubbles: true }));
    return true;
}
"""

FILL_RICH_TEXT_SCRIPT = """
(args) => {
    const el = document.querySelector(args.selector);
    if (!el) return false;
    if (!el.textContent || el.textContent.trim() === '') {
        el.textContent = args.text;
        el.dispatchEvent(new Event('input', { bubbles: true }));
    }
    return true;
}
"""
