"""
Context builders - The messages that restart or re-seed a conversation.

Every user message is sent with the working directory in front of it. When
the orchestrator throws the conversation away (compaction, rate-limit
recovery) it sends a continuation message instead, built here, that
restates the original task so the model can pick up from the current page
state rather than from lost history.
"""

import json
from pathlib import Path
from typing import Any

from tabagent.types import ToolCall

RESULT_SNIPPET_CHARS = 500
MAX_SUMMARY_ACTIONS = 20
SYNTHESIZED_SUMMARY_ACTIONS = 5
TASK_MEMORY_CHARS = 200


def working_dir_prefix(working_dir: str | Path) -> str:
    return f"[Working directory: {working_dir}]\n\n"


def build_user_message(working_dir: str | Path, text: str, memory_context: str = "") -> str:
    return working_dir_prefix(working_dir) + text + memory_context


def build_compaction_message(
    working_dir: str | Path,
    task: str,
    last_tool_name: str,
    last_result: Any,
    completed_actions: list[str],
    memory_context: str = "",
) -> str:
    """
    Continuation message for a freshly compacted conversation.

    Carries the original task, the last tool and a JSON snippet of its
    result, the recent completed actions (with an instruction not to repeat
    them) and the cross-session memory block.
    """
    snippet = json.dumps(last_result or "", ensure_ascii=False)[:RESULT_SNIPPET_CHARS]

    recent = completed_actions[-MAX_SUMMARY_ACTIONS:]
    action_summary = ""
    if recent:
        action_summary = (
            "\n\nActions completed so far:\n- "
            + "\n- ".join(recent)
            + "\n\nDO NOT repeat actions on pages/posts you already visited. Move on to NEW posts."
        )

    return (
        working_dir_prefix(working_dir)
        + "[CONTEXT COMPACTED — Previous conversation was reset to save tokens.]\n\n"
        + f"Your original task: {task}\n\n"
        + f'The last tool you used was "{last_tool_name}" which returned: {snippet}'
        + action_summary
        + memory_context
        + "\n\nContinue working on the task. Read the current page state if needed and keep going."
    )


def build_rate_limit_recovery_message(working_dir: str | Path, task: str) -> str:
    return (
        working_dir_prefix(working_dir)
        + "[Rate limit recovery — context was reset.]\n\n"
        + f"Your original task: {task}\n\n"
        + "Continue working on the task. Read the current page state and keep going."
    )


def describe_completed_action(call: ToolCall, result: str) -> str | None:
    """Human-readable record of a significant, successful action, if any."""
    if call.name == "chrome_navigate" and call.args.get("url"):
        return f"Navigated to: {call.args['url']}"
    if call.name == "chrome_type" and result.startswith("Typed"):
        snippet = str(call.args.get("text") or "")[:60]
        return f'Typed comment: "{snippet}..."'
    if call.name == "chrome_click" and result.startswith("Clicked"):
        return f"Clicked: {call.args.get('target')}"
    return None


def summarize_actions(completed_actions: list[str], empty: str) -> str:
    """The last actions joined by '; ', or `empty` when there are none."""
    return "; ".join(completed_actions[-MAX_SUMMARY_ACTIONS:]) or empty


def synthesize_summary(completed_actions: list[str]) -> str:
    """Fallback final message for a turn where the model said nothing."""
    recent = completed_actions[-SYNTHESIZED_SUMMARY_ACTIONS:]
    return "Done. Here's what I did:\n  - " + "\n  - ".join(recent)
