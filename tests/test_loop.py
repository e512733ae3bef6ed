"""
Tests for AgentLoop - the turn orchestrator.

The model is replaced by a scripted fake; the router, session log, memory
log and workspace are real.
"""

from collections import deque
from collections.abc import Callable
from typing import Any

import pytest

from tabagent.config import LoopConfig
from tabagent.llm import ChatSession, ModelResponse
from tabagent.loop import AgentLoop
from tabagent.memory import MemoryLog
from tabagent.session import Session
from tabagent.tools import Tool, ToolRouter
from tabagent.types import MemoryType, Role, ToolCall, ToolResult
from tabagent.workspace import Workspace


class FakeLLM:
    """
    Scripted stand-in for GeminiClient.

    Each send pops the next scripted item; exceptions are raised.
    """

    def __init__(self, script: list[Any]) -> None:
        self.script = deque(script)
        self.started: list[list[dict]] = []
        self.messages: list[str] = []
        self.function_results: list[list[ToolResult]] = []

    def start_chat(self, history: list[dict] | None = None) -> ChatSession:
        self.started.append(list(history or []))
        return ChatSession(contents=list(history or []))

    def send_message(self, chat: ChatSession, text: str) -> ModelResponse:
        self.messages.append(text)
        return self._next()

    def send_function_results(self, chat: ChatSession, results: list[ToolResult]) -> ModelResponse:
        self.function_results.append(list(results))
        return self._next()

    def _next(self) -> ModelResponse:
        item = self.script.popleft()
        if isinstance(item, Exception):
            raise item
        return item


def text(value: str) -> ModelResponse:
    return ModelResponse(type="text", text=value)


def calls(*items: tuple[str, dict]) -> ModelResponse:
    return ModelResponse(type="function_calls", calls=[ToolCall(name, args) for name, args in items])


def stub_tools() -> list[Tool]:
    def schema() -> dict:
        return {"type": "object", "properties": {}}

    return [
        Tool("chrome_navigate", "Navigate", schema(), lambda url: f"Navigated to: https://{url}"),
        Tool("chrome_click", "Click", schema(), lambda target: f'Clicked: BUTTON "{target}"'),
        Tool("chrome_wait", "Wait", schema(), lambda ms: f"Waited {ms}ms"),
    ]


@pytest.fixture
def make_loop(tmp_path):
    slept: list[float] = []

    def factory(
        script: list[Any], sleep: Callable[[float], None] | None = None, **config: Any
    ) -> tuple[AgentLoop, FakeLLM, list[float]]:
        llm = FakeLLM(script)
        router = ToolRouter()
        router.register_all(stub_tools())
        loop = AgentLoop(
            llm=llm,
            router=router,
            session=Session(tmp_path / "sessions", "test"),
            memory=MemoryLog(tmp_path / "sessions" / "memory.jsonl"),
            workspace=Workspace(tmp_path),
            config=LoopConfig(**config),
            sleep=sleep or slept.append,
        )
        return loop, llm, slept

    return factory


def session_contents(loop: AgentLoop, role: Role) -> list[str]:
    return [e.content for e in loop.session.all_entries() if e.role == role]


class TestBasicTurn:
    """Test a plain request/response cycle."""

    def test_text_reply(self, make_loop, tmp_path) -> None:
        loop, llm, _ = make_loop([text("Hello!")])

        result = loop.run_turn("hi")

        assert result.text == "Hello!"
        assert not result.synthesized
        assert llm.messages == [f"[Working directory: {tmp_path}]\n\nhi"]
        assert [e.role for e in loop.session.all_entries()] == [Role.USER, Role.MODEL]

    def test_tool_calls_are_logged_in_order(self, make_loop) -> None:
        loop, llm, _ = make_loop([
            calls(("chrome_navigate", {"url": "example.com"}), ("chrome_click", {"target": "More"})),
            text("Opened it."),
        ])

        result = loop.run_turn("open example")

        assert result.tool_calls == 2
        assert [e.role for e in loop.session.all_entries()] == [
            Role.USER, Role.TOOL_CALL, Role.TOOL_RESULT, Role.TOOL_CALL, Role.TOOL_RESULT, Role.MODEL,
        ]
        assert session_contents(loop, Role.TOOL_CALL)[0] == '{"name": "chrome_navigate", "args": {"url": "example.com"}}'
        assert loop.session.all_entries()[2].metadata == {"tool": "chrome_navigate"}
        assert [r.name for r in llm.function_results[0]] == ["chrome_navigate", "chrome_click"]
        assert loop.completed_actions == ["Navigated to: example.com", "Clicked: More"]

    def test_unknown_tool_is_reported_to_model(self, make_loop) -> None:
        loop, llm, _ = make_loop([calls(("teleport", {})), text("Sorry.")])
        loop.run_turn("go")
        assert llm.function_results[0][0].content == "Unknown tool: teleport"


class TestCompaction:
    """Test context compaction after many tool calls."""

    def test_compaction_restarts_chat_with_task(self, make_loop) -> None:
        loop, llm, _ = make_loop(
            [
                calls(("chrome_navigate", {"url": "news.example.com"}), ("chrome_click", {"target": "Reply"})),
                calls(("chrome_wait", {"ms": 500})),
                text("reply to the old chat"),
                text("All done."),
            ],
            compact_threshold=3,
        )

        result = loop.run_turn("open news and reply")

        assert result.compactions == 1
        assert result.text == "All done."
        # Pending results still go to the old chat before it is dropped.
        assert [r.name for r in llm.function_results[1]] == ["chrome_wait"]
        assert llm.started[-1] == []

        continuation = llm.messages[-1]
        assert "[CONTEXT COMPACTED" in continuation
        assert "Your original task: open news and reply" in continuation
        assert 'The last tool you used was "chrome_wait"' in continuation
        assert "- Navigated to: news.example.com\n- Clicked: Reply" in continuation

        assert "Context compacted after 3 tool calls." in session_contents(loop, Role.SYSTEM)
        [memory] = loop.memory.load_recent()
        assert memory.type == MemoryType.COMPACTION
        assert memory.summary == "Navigated to: news.example.com; Clicked: Reply"

    def test_send_failure_before_compaction_is_ignored(self, make_loop) -> None:
        loop, llm, _ = make_loop(
            [calls(("chrome_wait", {"ms": 1}), ("chrome_wait", {"ms": 2})), Exception("HTTP 500"), text("ok")],
            compact_threshold=2,
        )
        result = loop.run_turn("wait twice")
        assert result.text == "ok"
        assert result.error is None


class TestInterrupt:
    """Test cooperative cancellation."""

    def test_interrupt_skips_remaining_calls(self, make_loop) -> None:
        """An interrupt during call 2 of 5 stops calls 3-5 and sends nothing back."""
        loop, llm, _ = make_loop([calls(*[("step", {}) for _ in range(5)])])
        executed: list[int] = []

        def step() -> str:
            executed.append(len(executed) + 1)
            if len(executed) == 2:
                loop.handle_interrupt_signal()
            return "ok"

        loop.router.register(Tool("step", "One step", {"type": "object", "properties": {}}, step))

        result = loop.run_turn("do five things")

        assert executed == [1, 2]
        assert result.interrupted
        assert result.text is None
        assert llm.function_results == []
        assert [e.role for e in loop.session.all_entries()] == [
            Role.USER, Role.TOOL_CALL, Role.TOOL_RESULT, Role.TOOL_CALL, Role.TOOL_RESULT, Role.SYSTEM,
        ]
        assert loop.session.all_entries()[-1].content == "User interrupted the current task."
        assert not loop.interrupts.interrupted

    def test_signal_outside_turn_logs_nothing(self, make_loop) -> None:
        loop, _, _ = make_loop([])
        loop.handle_interrupt_signal()
        assert loop.session.entry_count == 0


class TestErrorRecovery:
    """Test rate limits and model errors."""

    def test_rate_limit_recovery(self, make_loop) -> None:
        """Five failed retries, a 30s cooldown, then a fresh chat with the task restated."""
        loop, llm, slept = make_loop([Exception("429 Too Many Requests")] * 6 + [text("Recovered.")])

        result = loop.run_turn("check the inbox")

        assert slept == [10, 20, 30, 40, 50, 30.0]
        assert result.recovered_from_rate_limit
        assert result.text == "Recovered."
        assert len(llm.started) == 2
        assert "[Rate limit recovery" in llm.messages[-1]
        assert "Your original task: check the inbox" in llm.messages[-1]

    def test_interrupt_during_backoff(self, make_loop) -> None:
        """Ctrl+C while waiting out a rate limit ends the turn after that wait."""
        waits: list[float] = []

        def sleep(seconds: float) -> None:
            waits.append(seconds)
            loop.handle_interrupt_signal()

        loop, llm, _ = make_loop([Exception("429 Too Many Requests")] * 6, sleep=sleep)

        result = loop.run_turn("check the inbox")

        assert waits == [10]
        assert len(llm.messages) == 1
        assert result.interrupted
        assert result.error is None
        assert not result.recovered_from_rate_limit
        assert session_contents(loop, Role.SYSTEM) == ["User interrupted the current task."]

    def test_interrupt_during_cooldown(self, make_loop) -> None:
        """Ctrl+C during the cooldown means the recovery message is never sent."""
        waits: list[float] = []

        def sleep(seconds: float) -> None:
            waits.append(seconds)
            if seconds == 5.0:
                loop.handle_interrupt_signal()

        loop, llm, _ = make_loop(
            [Exception("429 Too Many Requests")] * 6 + [text("Recovered.")],
            sleep=sleep,
            rate_limit_cooldown=5.0,
        )

        result = loop.run_turn("check the inbox")

        assert waits == [10, 20, 30, 40, 50, 5.0]
        assert result.interrupted
        assert result.text is None
        assert not result.recovered_from_rate_limit
        assert all("[Rate limit recovery" not in m for m in llm.messages)
        assert len(llm.script) == 1

    def test_rate_limit_retry_then_success(self, make_loop) -> None:
        loop, _, slept = make_loop([Exception("Resource exhausted. Please retry in 7.5s."), text("ok")])
        result = loop.run_turn("hi")
        assert slept == [10]
        assert result.text == "ok"
        assert not result.recovered_from_rate_limit

    def test_history_error_reinitializes_chat(self, make_loop) -> None:
        loop, llm, _ = make_loop([Exception("HTTP 400: INVALID_ARGUMENT"), text("fresh start")])
        result = loop.run_turn("hi")
        assert result.text == "fresh start"
        assert len(llm.started) == 2
        assert len(llm.messages) == 2

    def test_other_errors_are_recorded(self, make_loop) -> None:
        loop, _, _ = make_loop([Exception("HTTP 500: internal")])
        result = loop.run_turn("hi")
        assert result.error == "Error: HTTP 500: internal"
        assert "Error: HTTP 500: internal" in session_contents(loop, Role.SYSTEM)

    def test_tool_result_error_synthesizes_summary(self, make_loop) -> None:
        """Work done without a final answer is still summarized for the user."""
        loop, _, _ = make_loop([calls(("chrome_navigate", {"url": "example.com"})), Exception("HTTP 500: boom")])

        result = loop.run_turn("go to example")

        assert result.error == "Tool result error: HTTP 500: boom"
        assert result.synthesized
        assert result.text == "Done. Here's what I did:\n  - Navigated to: example.com"


class TestMemoryContext:
    """Test that cross-session memory reaches a fresh chat."""

    def test_memory_rides_with_first_message(self, make_loop, tmp_path) -> None:
        loop, llm, _ = make_loop([text("On it."), text("Done.")])
        loop.memory.save(MemoryType.SESSION_END, "reply to posts", "Clicked: Reply")
        loop.init_chat()

        loop.run_turn("keep going")
        loop.run_turn("thanks")

        first, second = llm.messages
        assert first.startswith(f"[Working directory: {tmp_path}]\n\nkeep going\n\n## Recent Memory (1 entries)")
        assert "- [just now] reply to posts: Clicked: Reply" in first
        assert second == f"[Working directory: {tmp_path}]\n\nthanks"
        assert session_contents(loop, Role.USER) == ["keep going", "thanks"]


class TestEndSession:
    """Test the session_end memory."""

    def test_saves_last_task(self, make_loop) -> None:
        loop, _, _ = make_loop([calls(("chrome_click", {"target": "Send"})), text("Sent.")])
        loop.run_turn("send the draft")

        entry = loop.end_session()

        assert entry.type == MemoryType.SESSION_END
        assert entry.task == "send the draft"
        assert entry.summary == "Clicked: Send"
        assert loop.memory.load_recent()[-1] == entry

    def test_nothing_saved_without_a_task(self, make_loop) -> None:
        loop, _, _ = make_loop([])
        assert loop.end_session() is None
        assert loop.memory.load_recent() == []
