"""
Tests for the remote debugging target listing.
"""

import httpx
import pytest

from tabagent.cdp import CDPError, CDPTransport


def transport_for(handler) -> CDPTransport:
    return CDPTransport("localhost", 9222, http_client=httpx.Client(transport=httpx.MockTransport(handler)))


class TestListTargets:
    """Test /json/list parsing."""

    def test_only_pages_are_listed(self) -> None:
        targets = [
            {"id": "A", "type": "page", "title": "Inbox", "url": "https://mail.example.com/",
             "webSocketDebuggerUrl": "ws://localhost:9222/devtools/page/A"},
            {"id": "W", "type": "service_worker", "title": "sw", "url": "https://mail.example.com/sw.js"},
            {"id": "B", "type": "page", "title": "", "url": "about:blank"},
        ]
        seen: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(str(request.url))
            return httpx.Response(200, json=targets)

        tabs = transport_for(handler).list_targets()

        assert seen == ["http://localhost:9222/json/list"]
        assert [t.id for t in tabs] == ["A", "B"]
        assert tabs[0].debugger_url == "ws://localhost:9222/devtools/page/A"
        assert tabs[1].title == "(untitled)"

    def test_unreachable_chrome(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(CDPError, match="--remote-debugging-port=9222"):
            transport_for(handler).list_targets()

    def test_bad_status(self) -> None:
        with pytest.raises(CDPError):
            transport_for(lambda request: httpx.Response(500)).list_targets()
