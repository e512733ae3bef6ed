"""
Tests for the tool router and the tool catalog.
"""

import re

from tabagent.browser import BrowserSession
from tabagent.config import BrowserConfig
from tabagent.tools import (
    Tool,
    ToolRouter,
    create_browser_tools,
    create_default_router,
    create_workspace_tools,
    default_screenshot_name,
)
from tabagent.types import ToolCall
from tabagent.workspace import Workspace


def echo_tool() -> Tool:
    return Tool(
        name="echo",
        description="Echo the input",
        parameters={
            "type": "object",
            "properties": {"text": {"type": "string", "description": "What to echo"}},
            "required": ["text"],
        },
        handler=lambda text: f"echo: {text}",
    )


class TestToolRouter:
    """Test dispatch and error translation."""

    def test_execute(self) -> None:
        router = ToolRouter()
        router.register(echo_tool())
        result = router.execute(ToolCall(name="echo", args={"text": "hi"}))
        assert result.name == "echo"
        assert result.content == "echo: hi"
        assert not result.is_error

    def test_unknown_tool(self) -> None:
        result = ToolRouter().execute(ToolCall(name="teleport"))
        assert result.content == "Unknown tool: teleport"

    def test_handler_exception_becomes_text(self) -> None:
        """A raising handler never escapes the router."""
        def explode() -> str:
            raise RuntimeError("kaboom")

        router = ToolRouter()
        router.register(Tool("explode", "Always fails", {"type": "object", "properties": {}}, explode))
        result = router.execute(ToolCall(name="explode"))
        assert result.content == "Tool error (explode): kaboom"
        assert result.is_error

    def test_bad_arguments_become_text(self) -> None:
        router = ToolRouter()
        router.register(echo_tool())
        result = router.execute(ToolCall(name="echo", args={"wrong": 1}))
        assert result.content.startswith("Tool error (echo):")

    def test_gemini_declarations(self) -> None:
        router = ToolRouter()
        router.register(echo_tool())
        [declaration] = router.get_declarations()
        assert declaration["name"] == "echo"
        assert declaration["parameters"]["type"] == "OBJECT"
        assert declaration["parameters"]["properties"]["text"]["type"] == "STRING"
        assert declaration["parameters"]["required"] == ["text"]


class TestCatalog:
    """Test the full tool catalog."""

    def test_all_tools_registered(self, transport, tmp_path) -> None:
        browser = BrowserSession(transport, BrowserConfig())
        router = create_default_router(browser, Workspace(tmp_path))
        assert set(router.tool_names) == {
            "chrome_list_tabs", "chrome_attach", "chrome_navigate", "chrome_get_page_text",
            "chrome_screenshot", "chrome_click", "chrome_type", "chrome_scroll",
            "chrome_press_key", "chrome_wait",
            "read_file", "write_file", "edit_file", "list_files", "search_files", "run_command",
        }

    def test_screenshot_name(self) -> None:
        assert re.fullmatch(r"screenshot-\d{4}-\d\d-\d\dT\d\d-\d\d-\d\d-\d{3}Z\.png", default_screenshot_name())


class TestBrowserTools:
    """Test argument handling of the chrome_ tools."""

    def _router(self, transport, slept: list[float], **config) -> ToolRouter:
        browser = BrowserSession(transport, BrowserConfig(**config), sleep=slept.append)
        router = ToolRouter()
        router.register_all(create_browser_tools(browser))
        return router

    def test_list_tabs_format(self, transport) -> None:
        result = self._router(transport, []).execute(ToolCall("chrome_list_tabs"))
        assert result.content.startswith("[0] Inbox\n    https://mail.example.com/\n\n[1] News")

    def test_list_tabs_empty(self, transport) -> None:
        transport.tabs.clear()
        assert self._router(transport, []).execute(ToolCall("chrome_list_tabs")).content == "No tabs found."

    def test_attach_accepts_float_index(self, transport) -> None:
        """Numbers arrive from the model as floats."""
        result = self._router(transport, []).execute(ToolCall("chrome_attach", {"tabIndex": 2.0}))
        assert result.content == 'Attached to: "Docs" (https://docs.example.com/)'

    def test_wait_is_clamped(self, transport) -> None:
        slept: list[float] = []
        result = self._router(transport, slept).execute(ToolCall("chrome_wait", {"ms": 120000}))
        assert result.content == "Waited 30000ms"
        assert slept == [30.0]

    def test_detached_action_reports_error(self, transport) -> None:
        result = self._router(transport, []).execute(ToolCall("chrome_get_page_text"))
        assert result.content.startswith("Tool error (chrome_get_page_text): Not connected")

    def test_screenshot_goes_to_configured_dir(self, transport, tmp_path) -> None:
        router = self._router(transport, [], screenshots_dir=str(tmp_path / "shots"))
        router.execute(ToolCall("chrome_attach", {"tabIndex": 0}))
        result = router.execute(ToolCall("chrome_screenshot", {"filename": "inbox.png"}))
        assert result.content == f"Screenshot saved to: {tmp_path / 'shots' / 'inbox.png'}"


class TestWorkspaceTools:
    """Test the file tools through the router."""

    def test_paths_resolve_against_workspace(self, tmp_path) -> None:
        router = ToolRouter()
        router.register_all(create_workspace_tools(Workspace(tmp_path)))

        router.execute(ToolCall("write_file", {"path": "notes/a.txt", "content": "hello"}))
        result = router.execute(ToolCall("read_file", {"path": "notes/a.txt", "offset": 1.0}))

        assert (tmp_path / "notes" / "a.txt").read_text() == "hello"
        assert "    1 │ hello" in result.content

    def test_list_files_defaults(self, tmp_path) -> None:
        router = ToolRouter()
        router.register_all(create_workspace_tools(Workspace(tmp_path)))
        (tmp_path / "x.py").write_text("")
        assert "[file] x.py" in router.execute(ToolCall("list_files")).content
