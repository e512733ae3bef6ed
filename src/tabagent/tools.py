"""
Tool System - The only way the agent touches the world.

The model never acts directly: it emits named tool calls, and the router
looks each one up and runs its handler. A handler always yields text. Any
exception a handler raises is converted to "Tool error (<name>): <message>"
so a failing tool never aborts the turn; the model reads the error and
tries something else.

Tools are declared with a JSON schema for their parameters, which is
rendered into the Gemini functionDeclarations format for the model.
"""

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from tabagent.browser import BrowserSession
from tabagent.config import BrowserConfig
from tabagent.types import ToolCall, ToolResult
from tabagent.workspace import Workspace

logger = logging.getLogger(__name__)


class ToolHandler(Protocol):
    """Protocol for tool handler functions."""
    def __call__(self, **kwargs: Any) -> str: ...


def _gemini_schema(schema: dict[str, Any]) -> dict[str, Any]:
    """Convert a lowercase JSON schema into Gemini's uppercase type names."""
    converted: dict[str, Any] = {}
    for key, value in schema.items():
        if key == "type" and isinstance(value, str):
            converted[key] = value.upper()
        elif key == "properties":
            converted[key] = {name: _gemini_schema(prop) for name, prop in value.items()}
        elif key == "items":
            converted[key] = _gemini_schema(value)
        else:
            converted[key] = value
    return converted


@dataclass
class Tool:
    """
    Definition of a tool that the agent can use.

    A tool has:
    - name: Unique identifier
    - description: What the tool does (shown to the model)
    - parameters: JSON Schema for the tool's parameters
    - handler: Function that executes the tool
    """
    name: str
    description: str
    parameters: dict[str, Any]
    handler: ToolHandler

    def to_gemini_declaration(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": _gemini_schema(self.parameters),
        }


@dataclass
class ToolRouter:
    """Registry and dispatcher for the agent's tools."""

    _tools: dict[str, Tool] = field(default_factory=dict)

    def register(self, tool: Tool) -> None:
        """Register a tool."""
        if tool.name in self._tools:
            logger.warning(f"Overwriting existing tool: {tool.name}")
        self._tools[tool.name] = tool
        logger.debug(f"Registered tool: {tool.name}")

    def register_all(self, tools: list[Tool]) -> None:
        for tool in tools:
            self.register(tool)

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def execute(self, call: ToolCall) -> ToolResult:
        """
        Run one tool call. Never raises.

        Unknown names produce "Unknown tool: <name>"; handler exceptions
        produce "Tool error (<name>): <message>".
        """
        tool = self._tools.get(call.name)
        if tool is None:
            logger.warning(f"Model requested unknown tool: {call.name}")
            return ToolResult(name=call.name, content=f"Unknown tool: {call.name}")

        logger.info(f"Executing tool: {call.name}")
        try:
            content = tool.handler(**call.args)
        except Exception as e:
            logger.error(f"Tool {call.name} failed: {e}")
            return ToolResult(name=call.name, content=f"Tool error ({call.name}): {e}")
        return ToolResult(name=call.name, content=str(content))

    def get_declarations(self) -> list[dict[str, Any]]:
        """Gemini functionDeclarations for all registered tools."""
        return [tool.to_gemini_declaration() for tool in self._tools.values()]

    @property
    def tool_names(self) -> list[str]:
        return list(self._tools.keys())

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools


def _no_params() -> dict[str, Any]:
    return {"type": "object", "properties": {}}


def default_screenshot_name(now: datetime | None = None) -> str:
    """screenshot-<ISO timestamp with ':' and '.' replaced by '-'>.png"""
    now = now or datetime.now(UTC)
    stamp = now.isoformat(timespec="milliseconds").replace("+00:00", "Z")
    return f"screenshot-{stamp.replace(':', '-').replace('.', '-')}.png"


def format_tab_list(browser: BrowserSession) -> str:
    tabs = browser.list_tabs()
    if not tabs:
        return "No tabs found."
    return "\n\n".join(f"[{i}] {tab.title}\n    {tab.url}" for i, tab in enumerate(tabs))


def create_browser_tools(browser: BrowserSession, config: BrowserConfig | None = None) -> list[Tool]:
    """The chrome_* tools, bound to one BrowserSession."""
    config = config or browser.config

    def screenshot(filename: str | None = None) -> str:
        path = Path(config.screenshots_dir).resolve() / (filename or default_screenshot_name())
        return browser.screenshot(path)

    def scroll(direction: str, amount: float | None = None) -> str:
        return browser.scroll(direction, int(amount) if amount else None)

    def wait(ms: float) -> str:
        return browser.wait(max(0, min(int(ms), config.max_wait_ms)))

    return [
        Tool(
            name="chrome_list_tabs",
            description=(
                "List all open tabs in the Chrome browser. "
                "Returns tab index, title, and URL for each."
            ),
            parameters=_no_params(),
            handler=lambda: format_tab_list(browser),
        ),
        Tool(
            name="chrome_attach",
            description=(
                "Attach to a specific Chrome tab by its index number (from chrome_list_tabs). "
                "You must attach before using other chrome_ tools."
            ),
            parameters={
                "type": "object",
                "properties": {
                    "tabIndex": {
                        "type": "number",
                        "description": "The tab index from chrome_list_tabs",
                    },
                },
                "required": ["tabIndex"],
            },
            handler=lambda tabIndex: browser.attach(int(tabIndex)),
        ),
        Tool(
            name="chrome_navigate",
            description="Navigate the current tab to a URL. Waits for the page to load.",
            parameters={
                "type": "object",
                "properties": {
                    "url": {
                        "type": "string",
                        "description": "The URL to navigate to (e.g. 'https://google.com' or 'google.com')",
                    },
                },
                "required": ["url"],
            },
            handler=lambda url: browser.navigate(url),
        ),
        Tool(
            name="chrome_get_page_text",
            description=(
                "Get the visible text content and interactive elements of the current page. "
                "Use this to understand what's on a page."
            ),
            parameters=_no_params(),
            handler=lambda: browser.get_page_text(),
        ),
        Tool(
            name="chrome_screenshot",
            description="Take a screenshot of the current page and save to disk.",
            parameters={
                "type": "object",
                "properties": {
                    "filename": {
                        "type": "string",
                        "description": "Optional filename (e.g. 'inbox.png'). Saved to the screenshots directory.",
                    },
                },
            },
            handler=screenshot,
        ),
        Tool(
            name="chrome_click",
            description="Click an element by CSS selector or by its visible text.",
            parameters={
                "type": "object",
                "properties": {
                    "target": {
                        "type": "string",
                        "description": "CSS selector or visible text of the element to click",
                    },
                },
                "required": ["target"],
            },
            handler=lambda target: browser.click(target),
        ),
        Tool(
            name="chrome_type",
            description=(
                "Type text into an input field. "
                "Find input by CSS selector, placeholder, name, or aria-label."
            ),
            parameters={
                "type": "object",
                "properties": {
                    "target": {
                        "type": "string",
                        "description": "CSS selector, placeholder, name, or aria-label of the input",
                    },
                    "text": {"type": "string", "description": "The text to type"},
                },
                "required": ["target", "text"],
            },
            handler=lambda target, text: browser.type_text(target, text),
        ),
        Tool(
            name="chrome_scroll",
            description="Scroll the page up or down.",
            parameters={
                "type": "object",
                "properties": {
                    "direction": {"type": "string", "description": "'up' or 'down'"},
                    "amount": {"type": "number", "description": "Pixels to scroll (default: 500)"},
                },
                "required": ["direction"],
            },
            handler=scroll,
        ),
        Tool(
            name="chrome_press_key",
            description="Press a keyboard key (Enter, Tab, Escape, arrow keys, etc).",
            parameters={
                "type": "object",
                "properties": {
                    "key": {
                        "type": "string",
                        "description": "Key name: 'Enter', 'Tab', 'Escape', 'Backspace', 'ArrowDown', etc.",
                    },
                },
                "required": ["key"],
            },
            handler=lambda key: browser.press_key(key),
        ),
        Tool(
            name="chrome_wait",
            description=f"Wait for a specified duration (ms). Max {config.max_wait_ms}.",
            parameters={
                "type": "object",
                "properties": {
                    "ms": {"type": "number", "description": "Milliseconds to wait"},
                },
                "required": ["ms"],
            },
            handler=wait,
        ),
    ]


def create_workspace_tools(workspace: Workspace) -> list[Tool]:
    """The file and shell tools, bound to one Workspace."""

    def read_file(path: str, offset: float | None = None, limit: float | None = None) -> str:
        return workspace.read_file(
            path,
            int(offset) if offset else None,
            int(limit) if limit else None,
        )

    return [
        Tool(
            name="read_file",
            description=(
                "Read the contents of a file. Returns the file text with line numbers. "
                "For large files, use offset and limit to read portions."
            ),
            parameters={
                "type": "object",
                "properties": {
                    "path": {
                        "type": "string",
                        "description": "File path (relative to working directory or absolute)",
                    },
                    "offset": {
                        "type": "number",
                        "description": "Line number to start from (1-based). Optional.",
                    },
                    "limit": {
                        "type": "number",
                        "description": "Max number of lines to read. Optional, default reads all.",
                    },
                },
                "required": ["path"],
            },
            handler=read_file,
        ),
        Tool(
            name="write_file",
            description=(
                "Create or overwrite a file with the given content. "
                "Creates parent directories if needed."
            ),
            parameters={
                "type": "object",
                "properties": {
                    "path": {
                        "type": "string",
                        "description": "File path (relative to working directory or absolute)",
                    },
                    "content": {
                        "type": "string",
                        "description": "The full content to write to the file",
                    },
                },
                "required": ["path", "content"],
            },
            handler=lambda path, content: workspace.write_file(path, content),
        ),
        Tool(
            name="edit_file",
            description=(
                "Replace a specific string in a file with new content. The old_string must "
                "appear exactly once in the file. Use this for surgical edits."
            ),
            parameters={
                "type": "object",
                "properties": {
                    "path": {"type": "string", "description": "File path"},
                    "old_string": {
                        "type": "string",
                        "description": "The exact string to find and replace (must be unique in the file)",
                    },
                    "new_string": {"type": "string", "description": "The replacement string"},
                },
                "required": ["path", "old_string", "new_string"],
            },
            handler=lambda path, old_string, new_string: workspace.edit_file(
                path, old_string, new_string
            ),
        ),
        Tool(
            name="list_files",
            description=(
                "List files and directories at a path. Returns names with [dir] or [file] "
                "markers. Optionally recursive."
            ),
            parameters={
                "type": "object",
                "properties": {
                    "path": {
                        "type": "string",
                        "description": "Directory path (default: working directory)",
                    },
                    "recursive": {
                        "type": "boolean",
                        "description": "If true, list recursively (max 3 levels deep). Default: false.",
                    },
                },
            },
            handler=lambda path=None, recursive=False: workspace.list_files(path, bool(recursive)),
        ),
        Tool(
            name="search_files",
            description=(
                "Search for a text pattern (regex supported) across files in a directory. "
                "Returns matching file paths and line contents. Like grep -rn."
            ),
            parameters={
                "type": "object",
                "properties": {
                    "pattern": {"type": "string", "description": "Text or regex pattern to search for"},
                    "path": {
                        "type": "string",
                        "description": "Directory to search in (default: working directory)",
                    },
                    "file_pattern": {
                        "type": "string",
                        "description": "Glob to filter files, e.g. '*.ts' or '*.py'. Default: all files.",
                    },
                },
                "required": ["pattern"],
            },
            handler=lambda pattern, path=None, file_pattern=None: workspace.search_files(
                pattern, path, file_pattern
            ),
        ),
        Tool(
            name="run_command",
            description=(
                "Execute a shell command and return its stdout and stderr. Runs in the "
                "working directory. Timeout: 60s. Use for git, npm, python, make, tests, etc."
            ),
            parameters={
                "type": "object",
                "properties": {
                    "command": {"type": "string", "description": "The shell command to execute"},
                    "cwd": {
                        "type": "string",
                        "description": "Working directory for the command. Default: current project directory.",
                    },
                },
                "required": ["command"],
            },
            handler=lambda command, cwd=None: workspace.run_command(command, cwd),
        ),
    ]


def create_default_router(
    browser: BrowserSession,
    workspace: Workspace,
    config: BrowserConfig | None = None,
) -> ToolRouter:
    """A router with every browser and workspace tool registered."""
    router = ToolRouter()
    router.register_all(create_browser_tools(browser, config))
    router.register_all(create_workspace_tools(workspace))
    return router
