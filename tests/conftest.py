"""Shared fakes: an in-memory tab connection and transport."""

import base64
from collections.abc import Callable
from typing import Any

import pytest

from tabagent.types import BrowserTab


class FakeTabConnection:
    """
    In-memory stand-in for a tab connection.

    Script results are looked up in `responses` by expression; a callable
    response is called with the script argument.
    """

    def __init__(self, tab_id: str) -> None:
        self.tab_id = tab_id
        self.alive = True
        self.enabled = False
        self.closed = False
        self.dialog_handler: Callable[[Any], None] | None = None
        self.responses: dict[str, Any] = {}
        self.evaluations: list[tuple[str, Any]] = []
        self.sent: list[tuple[str, dict[str, Any]]] = []
        self.navigations: list[tuple[str, int]] = []
        self.navigate_error: Exception | None = None
        self.screenshot_bytes = b"\x89PNG fake"

    def _check_alive(self) -> None:
        if not self.alive:
            raise ConnectionError("WebSocket is not open")

    def evaluate(self, expression: str, arg: Any = None) -> Any:
        self._check_alive()
        self.evaluations.append((expression, arg))
        if expression == "1":
            return 1
        response = self.responses.get(expression)
        return response(arg) if callable(response) else response

    def send(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        self._check_alive()
        self.sent.append((method, params or {}))
        return {}

    def navigate(self, url: str, timeout_ms: int) -> None:
        self._check_alive()
        self.navigations.append((url, timeout_ms))
        if self.navigate_error is not None:
            raise self.navigate_error

    def capture_screenshot(self) -> str:
        self._check_alive()
        return base64.b64encode(self.screenshot_bytes).decode()

    def set_dialog_handler(self, handler: Callable[[Any], None]) -> None:
        self.dialog_handler = handler

    def enable_domains(self) -> None:
        self.enabled = True

    def close(self) -> None:
        self.closed = True

    def scripts_run(self) -> list[str]:
        return [expression for expression, _ in self.evaluations]


class FakeTransport:
    """Transport over a mutable tab list that hands out FakeTabConnections."""

    def __init__(self, tabs: list[BrowserTab]) -> None:
        self.tabs = tabs
        self.connect_calls: list[str] = []
        self.connections: list[FakeTabConnection] = []
        self.configure: Callable[[FakeTabConnection], None] | None = None
        self.closed = False

    def list_targets(self) -> list[BrowserTab]:
        return list(self.tabs)

    def connect(self, tab: BrowserTab) -> FakeTabConnection:
        self.connect_calls.append(tab.id)
        connection = FakeTabConnection(tab.id)
        if self.configure is not None:
            self.configure(connection)
        self.connections.append(connection)
        return connection

    def close(self) -> None:
        self.closed = True

    @property
    def current(self) -> FakeTabConnection:
        return self.connections[-1]


@pytest.fixture
def tabs() -> list[BrowserTab]:
    return [
        BrowserTab(id="A", title="Inbox", url="https://mail.example.com/"),
        BrowserTab(id="B", title="News", url="https://news.example.com/"),
        BrowserTab(id="C", title="Docs", url="https://docs.example.com/"),
    ]


@pytest.fixture
def transport(tabs: list[BrowserTab]) -> FakeTransport:
    return FakeTransport(tabs)
