"""
Agent Loop - The turn-based orchestrator.

One user turn runs to completion before the next is accepted:

1. Append the user message to the session log and send it to the model,
   prefixed with the working directory.
2. If the model answers with function calls, execute them one at a time
   through the tool router, log every call and result, and send the batch
   of results back. Repeat until the model answers with text.
3. Rate limits are retried with backoff; if the retry budget runs out on
   the opening message, the conversation is reset and the task restated
   after a cooldown.
4. After a fixed number of tool calls the conversation is compacted: the
   pending results are returned to the old chat (the API requires it), then
   a fresh chat is seeded with the task, the last tool result, the completed
   actions and recent cross-session memory.

The user can interrupt at any time. The flag is checked before each tool
call and before results are sent back; once set, remaining calls are
skipped and nothing more is sent to the model for this turn.
"""

import json
import logging
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from tabagent.config import LoopConfig
from tabagent.context import (
    TASK_MEMORY_CHARS,
    build_compaction_message,
    build_rate_limit_recovery_message,
    build_user_message,
    describe_completed_action,
    summarize_actions,
    synthesize_summary,
)
from tabagent.interrupt import InterruptAction, InterruptController
from tabagent.llm import ChatSession, GeminiClient, ModelResponse
from tabagent.memory import MemoryLog
from tabagent.retry import call_with_rate_limit_retry, is_rate_limit_error
from tabagent.session import DEFAULT_CONTEXT_TURNS, Session
from tabagent.tools import ToolRouter
from tabagent.types import MemoryEntry, MemoryType, Role, ToolCall, ToolResult
from tabagent.workspace import Workspace

logger = logging.getLogger(__name__)


class TurnState(Enum):
    """Where the orchestrator is within a user turn."""
    IDLE = "idle"
    SENDING = "sending"
    EXECUTING = "executing"
    INTERRUPTED = "interrupted"


@dataclass
class TurnResult:
    """Outcome of one user turn."""
    text: str | None = None
    synthesized: bool = False
    interrupted: bool = False
    tool_calls: int = 0
    compactions: int = 0
    recovered_from_rate_limit: bool = False
    error: str | None = None


class TurnObserver:
    """
    Receives progress notifications while a turn runs.

    Every method is a no-op here; the CLI overrides them to print.
    """

    def on_model_text(self, text: str) -> None:
        pass

    def on_tool_start(self, call: ToolCall) -> None:
        pass

    def on_tool_result(self, call: ToolCall, result: ToolResult) -> None:
        pass

    def on_notice(self, message: str) -> None:
        pass


def _is_history_error(error: Exception) -> bool:
    message = str(error)
    return "INVALID_ARGUMENT" in message or "history" in message


class AgentLoop:
    """Drives the conversation between the model and the tools."""

    def __init__(
        self,
        llm: GeminiClient,
        router: ToolRouter,
        session: Session,
        memory: MemoryLog,
        workspace: Workspace,
        config: LoopConfig | None = None,
        context_turns: int = DEFAULT_CONTEXT_TURNS,
        interrupts: InterruptController | None = None,
        observer: TurnObserver | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.llm = llm
        self.router = router
        self.session = session
        self.memory = memory
        self.workspace = workspace
        self.config = config or LoopConfig()
        self.context_turns = context_turns
        self.interrupts = interrupts or InterruptController(self.config.interrupt_exit_window)
        self.observer = observer or TurnObserver()
        self._sleep = sleep

        self.state = TurnState.IDLE
        self._chat: ChatSession | None = None
        self._task = ""
        self._completed_actions: list[str] = []
        self._tool_call_count = 0
        self._had_text = False
        self._pending_memory = ""

    @property
    def completed_actions(self) -> list[str]:
        return list(self._completed_actions)

    @property
    def last_task(self) -> str:
        return self._task

    def init_chat(self) -> None:
        """
        Build the live chat from the session log.

        Recent cross-session memory rides along with the next user message,
        since system entries never reach the model history.
        """
        self._start_chat_from_history()
        self._pending_memory = self.memory.format_for_context()

    def _start_chat_from_history(self) -> None:
        history = self.session.to_gemini_history(self.context_turns)
        self._chat = self.llm.start_chat(history)
        logger.info(f"Chat initialized with {len(history)} history blocks")

    # -- interrupt ---------------------------------------------------------

    def handle_interrupt_signal(self) -> InterruptAction:
        """
        Route one Ctrl+C press.

        Only flags the running turn; run_turn logs the interruption once it
        stops, so the note lands after the turn's own entries.
        """
        action = self.interrupts.signal()
        if action == InterruptAction.INTERRUPT:
            self.state = TurnState.INTERRUPTED
        return action

    @property
    def _interrupted(self) -> bool:
        return self.interrupts.interrupted

    # -- turn --------------------------------------------------------------

    def run_turn(self, user_message: str) -> TurnResult:
        """
        Process one user message to completion.

        Never raises for model or tool failures; they are logged to the
        session and reported in TurnResult.error.
        """
        self.session.append(Role.USER, user_message)
        self.interrupts.begin_turn()
        self._task = user_message
        self._completed_actions = []
        self._tool_call_count = 0
        self._had_text = False

        result = TurnResult()
        try:
            if self._chat is None:
                self.init_chat()
            message = build_user_message(self.workspace.working_dir, user_message, self._pending_memory)
            self._pending_memory = ""

            self.state = TurnState.SENDING
            try:
                response = self._send_opening_message(message)
            except Exception as e:
                if self._interrupted or not is_rate_limit_error(e):
                    raise
                self._recover_from_rate_limit(e, result)
                return result

            self._process(response, result)
            self._finish(result)
        except Exception as e:
            if not self._interrupted:
                self._record_error(result, f"Error: {e}")
        finally:
            result.interrupted = self._interrupted
            if result.interrupted:
                self.session.append(Role.SYSTEM, "User interrupted the current task.")
            self.interrupts.end_turn()
            self.state = TurnState.IDLE
        return result

    def _send_opening_message(self, message: str) -> ModelResponse:
        try:
            return self._with_retry(lambda: self.llm.send_message(self._chat, message))
        except Exception as e:
            if not _is_history_error(e):
                raise
            logger.warning(f"Chat history rejected ({e}), reinitializing")
            self.observer.on_notice("Reinitializing session...")
            self._start_chat_from_history()
            return self._with_retry(lambda: self.llm.send_message(self._chat, message))

    def _recover_from_rate_limit(self, error: Exception, result: TurnResult) -> None:
        """Reset the conversation, cool down, and restate the task."""
        cooldown = self.config.rate_limit_cooldown
        logger.warning(f"Rate limit retries exhausted ({error}); resetting context")
        self.observer.on_notice(f"Rate limited — compacting and retrying in {cooldown:g}s...")
        self._chat = self.llm.start_chat([])
        self._tool_call_count = 0
        self._sleep(cooldown)
        if self._interrupted:
            return
        result.recovered_from_rate_limit = True

        message = build_rate_limit_recovery_message(self.workspace.working_dir, self._task)
        try:
            response = self._with_retry(lambda: self.llm.send_message(self._chat, message))
        except Exception as e:
            if not self._interrupted:
                self._record_error(result, f"Recovery failed: {e}")
            return
        self._process(response, result)
        self._finish(result)

    def _finish(self, result: TurnResult) -> None:
        # Never leave the user without feedback after silent work.
        if not self._had_text and not self._interrupted and self._completed_actions:
            result.text = synthesize_summary(self._completed_actions)
            result.synthesized = True
            self.observer.on_model_text(result.text)

    def _process(self, response: ModelResponse | None, result: TurnResult) -> None:
        """Run tool calls until the model answers with text or the turn stops."""
        while response is not None:
            if self._interrupted:
                return

            if not response.has_function_calls:
                text = response.text or ""
                self.observer.on_model_text(text)
                self._had_text = True
                self.session.append(Role.MODEL, text)
                result.text = text
                return

            if response.text:
                self.observer.on_model_text(response.text)

            results = self._execute_calls(response.calls, result)
            if results is None or self._interrupted:
                return

            self._tool_call_count += len(results)
            self.state = TurnState.SENDING
            if self._tool_call_count >= self.config.compact_threshold:
                response = self._compact(results, result)
                continue

            try:
                response = self._with_retry(
                    lambda: self.llm.send_function_results(self._chat, results)
                )
            except Exception as e:
                if not self._interrupted:
                    self._record_error(result, f"Tool result error: {e}")
                return

    def _execute_calls(self, calls: list[ToolCall], result: TurnResult) -> list[ToolResult] | None:
        """Execute a batch sequentially. Returns None when interrupted midway."""
        self.state = TurnState.EXECUTING
        pending = deque(calls)
        results: list[ToolResult] = []
        while pending:
            if self._interrupted:
                logger.info(f"Skipping {len(pending)} remaining tool call(s) after interrupt")
                self.observer.on_notice("(skipped remaining tool calls)")
                return None

            call = pending.popleft()
            self.session.append(Role.TOOL_CALL, json.dumps(call.to_json_payload(), ensure_ascii=False))
            self.observer.on_tool_start(call)
            tool_result = self.router.execute(call)
            self.observer.on_tool_result(call, tool_result)
            self.session.append(Role.TOOL_RESULT, tool_result.content, {"tool": call.name})

            results.append(tool_result)
            result.tool_calls += 1
            action = describe_completed_action(call, tool_result.content)
            if action:
                self._completed_actions.append(action)
        return results

    def _compact(self, results: list[ToolResult], result: TurnResult) -> ModelResponse | None:
        """Return pending results to the old chat, then continue in a fresh one."""
        logger.info(f"Compacting context after {self._tool_call_count} tool calls")
        self.observer.on_notice(f"Compacting context ({self._tool_call_count} tool calls)...")
        self._tool_call_count = 0

        try:
            self._with_retry(lambda: self.llm.send_function_results(self._chat, results))
        except Exception as e:
            # The old chat is discarded next, so its reply does not matter.
            logger.warning(f"Sending results before compaction failed: {e}")

        if self._interrupted:
            return None

        self._chat = self.llm.start_chat([])
        last = results[-1]
        message = build_compaction_message(
            self.workspace.working_dir,
            self._task,
            last.name,
            last.content,
            self._completed_actions,
            self.memory.format_for_context(),
        )
        self.session.append(
            Role.SYSTEM,
            f"Context compacted after {self.config.compact_threshold} tool calls.",
        )
        self.memory.save(
            MemoryType.COMPACTION,
            self._task[:TASK_MEMORY_CHARS],
            summarize_actions(self._completed_actions, "Context compacted (no tracked actions)"),
        )
        result.compactions += 1

        try:
            return self._with_retry(lambda: self.llm.send_message(self._chat, message))
        except Exception as e:
            if not self._interrupted:
                self._record_error(result, f"Error after compact: {e}")
            return None

    def _with_retry(self, fn: Callable[[], ModelResponse]) -> ModelResponse:
        max_retries = self.config.rate_limit_retries
        return call_with_rate_limit_retry(
            fn,
            max_retries=max_retries,
            sleep=self._sleep,
            on_retry=lambda wait, attempt: self.observer.on_notice(
                f"Rate limited. Retrying in {wait}s ({attempt}/{max_retries})..."
            ),
            should_stop=lambda: self._interrupted,
        )

    def _record_error(self, result: TurnResult, message: str) -> None:
        logger.error(message)
        self.observer.on_notice(message)
        self.session.append(Role.SYSTEM, message)
        result.error = message

    # -- session lifecycle -------------------------------------------------

    def end_session(self) -> MemoryEntry | None:
        """Record a session_end memory for the last task, if there was one."""
        if not self._task:
            return None
        return self.memory.save(
            MemoryType.SESSION_END,
            self._task[:TASK_MEMORY_CHARS],
            summarize_actions(self._completed_actions, "Session ended (no tracked actions)"),
        )
