"""
tabagent CLI - Interactive REPL around the agent loop.

Usage:
    tabagent [--dir PATH] [--resume SESSION_ID]

Anything typed that is not a slash command is sent to the model as a task.
Ctrl+C interrupts the running task; pressing it twice within two seconds
exits.
"""

import argparse
import logging
import os
import re
import signal
import sys
from collections.abc import Callable
from typing import Any

from tabagent.browser import BrowserError, BrowserSession
from tabagent.cdp import CDPError, CDPTransport
from tabagent.config import AgentConfig, ConfigError
from tabagent.interrupt import InterruptAction
from tabagent.llm import GeminiClient
from tabagent.loop import AgentLoop, TurnObserver
from tabagent.memory import MemoryLog
from tabagent.session import Session
from tabagent.tools import create_default_router
from tabagent.types import Role, ToolCall, ToolResult
from tabagent.workspace import Workspace

logger = logging.getLogger(__name__)

BAR = "│"

HELP_TEXT = """
  Commands:
    /tabs          List Chrome tabs
    /attach N      Attach to tab N
    /chrome <msg>  Send a browser task
    /cd <path>     Change working directory
    /pwd           Print working directory
    /clear         Clear screen
    /status        Session info
    /help          This help
    /exit          Quit

  Shortcuts:
    Ctrl+C         Interrupt current task
    Ctrl+C x2      Exit
"""

BANNER = """
  tabagent
  Browser control + coding agent
"""


def _clip(value: Any, limit: int) -> str:
    return str(value or "")[:limit]


def describe_tool_call(call: ToolCall) -> str:
    """Short progress line shown while a tool runs."""
    args = call.args
    descriptions: dict[str, Callable[[], str]] = {
        "chrome_list_tabs": lambda: "Listing browser tabs...",
        "chrome_attach": lambda: f"Connecting to tab {args.get('tabIndex')}...",
        "chrome_navigate": lambda: f"Navigating to {_clip(args.get('url'), 60)}...",
        "chrome_get_page_text": lambda: "Reading page...",
        "chrome_screenshot": lambda: "Taking screenshot...",
        "chrome_click": lambda: f'Clicking "{_clip(args.get("target"), 50)}"...',
        "chrome_type": lambda: f'Typing "{_clip(args.get("text"), 40)}..."',
        "chrome_scroll": lambda: f"Scrolling {args.get('direction') or 'down'}...",
        "chrome_press_key": lambda: f"Pressing {args.get('key')}...",
        "chrome_wait": lambda: f"Waiting {args.get('ms')}ms...",
        "read_file": lambda: f"Reading {args.get('path') or 'file'}...",
        "write_file": lambda: f"Writing {args.get('path') or 'file'}...",
        "edit_file": lambda: f"Editing {args.get('path') or 'file'}...",
        "list_files": lambda: f"Listing {args.get('path') or '.'}...",
        "search_files": lambda: f'Searching for "{args.get("pattern")}"...',
        "run_command": lambda: f"Running: {_clip(args.get('command'), 50)}...",
    }
    describe = descriptions.get(call.name)
    return describe() if describe else f"Running {call.name}..."


def describe_tool_result(call: ToolCall, result: ToolResult) -> str:
    """One-line summary of a tool result for the console."""
    content = result.content
    if result.is_error:
        return f"{BAR} x {content[:120]}"

    if call.name == "chrome_list_tabs":
        tab_count = len(re.findall(r"^\[\d+\]", content, re.MULTILINE))
        return f"{BAR} ok Found {tab_count} tab(s)"
    if call.name == "chrome_navigate":
        match = re.search(r"Navigated to: (.+)", content)
        return f"{BAR} ok Opened {match.group(1)[:70] if match else call.args.get('url')}"
    if call.name == "chrome_get_page_text":
        match = re.search(r"=== Page: (.+?) ===", content)
        return f"{BAR} ok Read page: {match.group(1)[:60] if match else 'page'}"
    if call.name == "chrome_click":
        match = re.search(r'Clicked: \w+ "(.+?)"', content)
        return f'{BAR} ok Clicked "{match.group(1)[:50] if match else call.args.get("target")}"'
    if call.name in ("chrome_attach", "chrome_screenshot", "chrome_scroll",
                     "chrome_press_key", "chrome_wait", "chrome_type"):
        return f"{BAR} ok {content[:100]}"
    truncated = content if len(content) <= 200 else content[:200] + "…"
    return f"{BAR} -> {truncated}"


class ConsoleObserver(TurnObserver):
    """Prints turn progress as plain text."""

    def __init__(self, output: Callable[[str], None] = print) -> None:
        self._out = output

    def on_model_text(self, text: str) -> None:
        self._out(f"\nGemini\n{text}\n")

    def on_tool_start(self, call: ToolCall) -> None:
        self._out(f"{BAR} {describe_tool_call(call)}")

    def on_tool_result(self, call: ToolCall, result: ToolResult) -> None:
        self._out(describe_tool_result(call, result))

    def on_notice(self, message: str) -> None:
        self._out(f"  {message}")


class AgentCLI:
    """The interactive REPL: slash commands plus free-text tasks."""

    def __init__(
        self,
        loop: AgentLoop,
        browser: BrowserSession,
        workspace: Workspace,
        memory: MemoryLog,
        input_fn: Callable[[str], str] = input,
        output: Callable[[str], None] = print,
    ) -> None:
        self.loop = loop
        self.browser = browser
        self.workspace = workspace
        self.memory = memory
        self.session = loop.session
        self._input = input_fn
        self._out = output

    def start(self) -> None:
        """Load or create the session, surface memory, and build the chat."""
        resumed = self.session.load()
        self._out(BANNER)
        if resumed and self.session.entry_count > 0:
            self._out(f"  Resumed session {self.session.id}")
            self._out(f"    {self.session.entry_count} entries loaded")
        else:
            self._out(f"  New session {self.session.id}")
            self.session.append(
                Role.SYSTEM,
                f"Session started. Working directory: {self.workspace.working_dir}",
            )

        # The loop sends the memory block with the first message.
        memories = self.memory.load_recent()
        if memories:
            self._out(f"    {len(memories)} memories loaded")

        self._out(f"    cwd: {self.workspace.working_dir}")
        self._out("\n  Ctrl+C to interrupt - /help for commands - /exit to quit\n")
        self.loop.init_chat()

    def run(self) -> None:
        self.start()
        previous = signal.signal(signal.SIGINT, self._on_sigint)
        try:
            while True:
                try:
                    line = self._input("> ").strip()
                except EOFError:
                    self._exit()
                    return
                if not line:
                    continue
                if line.startswith("/"):
                    if not self.handle_command(line):
                        return
                    continue
                self.loop.run_turn(line)
        finally:
            signal.signal(signal.SIGINT, previous)

    def _on_sigint(self, signum: int, frame: Any) -> None:
        action = self.loop.handle_interrupt_signal()
        if action == InterruptAction.EXIT:
            self._out("\nGoodbye.")
            raise SystemExit(0)
        if action == InterruptAction.INTERRUPT:
            self._out("\nInterrupted.\n")
        else:
            self._out("\nPress Ctrl+C again to exit, or type a message.")

    def handle_command(self, line: str) -> bool:
        """Run one slash command. Returns False when the REPL should stop."""
        command, _, arg = line.partition(" ")
        command = command.lower()
        arg = arg.strip()

        if command in ("/exit", "/quit", "/q"):
            self._exit()
            return False

        if command == "/chrome":
            if arg:
                self.loop.run_turn(f"[Browser task] {arg}")
            else:
                self._out(
                    "\n  Browser tools are always available.\n"
                    "  Just describe what you want in plain English.\n"
                    "  Use /tabs + /attach N to connect first.\n"
                )
        elif command == "/tabs":
            self._list_tabs()
        elif command == "/attach":
            self._attach(arg)
        elif command == "/cd":
            self._change_dir(arg)
        elif command == "/pwd":
            self._out(f"\n  {self.workspace.working_dir}\n")
        elif command == "/status":
            self._status()
        elif command == "/clear":
            self._out("\033[2J\033[H" + BANNER)
        elif command == "/help":
            self._out(HELP_TEXT)
        else:
            self._out(f"\n  Unknown: {command} - type /help\n")
        return True

    def _list_tabs(self) -> None:
        try:
            tabs = self.browser.list_tabs()
        except (CDPError, BrowserError) as e:
            self._out(f"\n  {e}\n")
            return
        if not tabs:
            self._out("\n  No tabs found. Is Chrome running with remote debugging?\n")
            return
        self._out("")
        for i, tab in enumerate(tabs):
            self._out(f"  [{i}] {tab.title}")
            self._out(f"      {tab.url}")
        self._out("\n  Use /attach <index> to connect.\n")

    def _attach(self, arg: str) -> None:
        try:
            index = int(arg)
        except ValueError:
            self._out("\n  Usage: /attach <tab-index>\n")
            return
        try:
            self._out(f"\n  {self.browser.attach(index)}\n")
        except (CDPError, BrowserError) as e:
            self._out(f"\n  {e}\n")

    def _change_dir(self, arg: str) -> None:
        if not arg:
            self._out("\n  Usage: /cd <path>\n")
            return
        try:
            new_dir = self.workspace.change_dir(arg)
        except OSError as e:
            self._out(f"\n  {e}\n")
            return
        self._out(f"\n  {new_dir}\n")
        self.session.append(Role.SYSTEM, f"Working directory changed to: {new_dir}")

    def _status(self) -> None:
        tab = self.browser.tab_info()
        self._out("")
        self._out(f"  Session    {self.session.id}")
        self._out(f"  Entries    {self.session.entry_count}")
        self._out(f"  Dir        {self.workspace.working_dir}")
        self._out(f"  Chrome     {tab.title if tab else 'Not connected'}")
        self._out(f"  Log        {self.session.log_path}")
        self._out("")

    def _exit(self) -> None:
        self.loop.end_session()
        self._out(f"  Session saved: {self.session.log_path}")
        self._out("  Goodbye.")
        self.browser.detach()


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="tabagent",
        description="Drive your running Chrome and your project directory with Gemini",
    )
    parser.add_argument("--dir", default=None, help="Working directory (default: current directory)")
    parser.add_argument("--resume", default=None, metavar="SESSION_ID", help="Resume a previous session")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "WARNING").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    config = AgentConfig.from_env()
    try:
        config.llm.validate()
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    try:
        workspace = Workspace()
        if args.dir:
            workspace.change_dir(args.dir)
    except OSError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    browser = BrowserSession(
        CDPTransport(config.browser.cdp_host, config.browser.cdp_port),
        config.browser,
    )
    router = create_default_router(browser, workspace, config.browser)
    llm = GeminiClient(config.llm, tools=router.get_declarations())
    session = Session(config.session.sessions_dir, args.resume)
    memory = MemoryLog(config.session.memory_file, config.session.memory_recent)
    loop = AgentLoop(
        llm=llm,
        router=router,
        session=session,
        memory=memory,
        workspace=workspace,
        config=config.loop,
        context_turns=config.session.context_turns,
        observer=ConsoleObserver(),
    )

    try:
        AgentCLI(loop, browser, workspace, memory).run()
    finally:
        browser.close()
        llm.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
