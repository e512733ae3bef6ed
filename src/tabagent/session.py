"""
Session - The append-only conversation log.

Every event of a conversation (user message, model message, tool call,
tool result, system note) is appended to one newline-delimited JSON file
per session and mirrored in memory. Nothing is ever rewritten or deleted,
so a session can be resumed after the process restarts.

The model only ever sees a bounded slice of this log: see
to_gemini_history() for how the slice is rebuilt into the two-role
(user/model) conversation the Gemini API accepts.
"""

import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from tabagent.types import ConversationEntry, Role

logger = logging.getLogger(__name__)

DEFAULT_CONTEXT_TURNS = 50

HistoryBlock = dict[str, Any]


def generate_session_id() -> str:
    """Timestamp-based id, e.g. 2025-01-15_14-30-00."""
    return datetime.now(UTC).strftime("%Y-%m-%d_%H-%M-%S")


class Session:
    """
    A single persisted agent session.

    The session owns its log file and an in-memory mirror of the entries.
    It is mutated only through append().
    """

    def __init__(self, sessions_dir: str | Path, session_id: str | None = None) -> None:
        self.id = session_id or generate_session_id()
        self.sessions_dir = Path(sessions_dir).resolve()
        self.sessions_dir.mkdir(parents=True, exist_ok=True)
        self.log_path = self.sessions_dir / f"{self.id}.jsonl"
        self._entries: list[ConversationEntry] = []

    def load(self) -> bool:
        """
        Load an existing session log from disk.

        Returns False when no log exists for this id. Malformed lines are
        skipped so a partially written line never blocks a resume.
        """
        if not self.log_path.exists():
            return False

        entries: list[ConversationEntry] = []
        with open(self.log_path, encoding="utf-8") as f:
            for line_number, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    entries.append(ConversationEntry.from_dict(json.loads(line)))
                except (json.JSONDecodeError, KeyError, ValueError) as e:
                    logger.warning(
                        f"Skipping malformed entry at {self.log_path}:{line_number}: {e}"
                    )
        self._entries = entries
        logger.info(f"Loaded session {self.id} ({len(entries)} entries)")
        return True

    def append(
        self,
        role: Role,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> ConversationEntry:
        """Append an entry to memory and disk."""
        entry = ConversationEntry(role=role, content=content, metadata=metadata)
        self._entries.append(entry)
        with open(self.log_path, "a", encoding="utf-8") as f:
            f.write(json.dumps(entry.to_dict(), ensure_ascii=False) + "\n")
        return entry

    def all_entries(self) -> list[ConversationEntry]:
        """All entries in append order."""
        return list(self._entries)

    def recent_entries(self, context_turns: int = DEFAULT_CONTEXT_TURNS) -> list[ConversationEntry]:
        """
        The most recent entries for rebuilding model history.

        At most context_turns * 2 entries, plus the very first entry when it
        is a system entry (it carries the initial working-directory context).
        """
        max_entries = context_turns * 2
        if len(self._entries) <= max_entries:
            return list(self._entries)

        first = [self._entries[0]] if self._entries[0].role == Role.SYSTEM else []
        recent = self._entries[-max_entries:] if max_entries > 0 else []
        return first + recent

    def to_gemini_history(self, context_turns: int = DEFAULT_CONTEXT_TURNS) -> list[HistoryBlock]:
        """
        Build a Gemini-compatible history from the recent entries.

        Tool calls count as model output and tool results as user context;
        system entries travel in the system instruction instead. The result
        starts with a user block, ends with a model block (a trailing user
        message is dropped because the caller re-sends it live), and never
        has two adjacent blocks with the same role.
        """
        history: list[HistoryBlock] = []
        for entry in self.recent_entries(context_turns):
            if entry.role == Role.USER:
                history.append(_block("user", entry.content))
            elif entry.role == Role.MODEL:
                history.append(_block("model", entry.content))
            elif entry.role == Role.TOOL_CALL:
                history.append(_block("model", f"[Tool Call] {entry.content}"))
            elif entry.role == Role.TOOL_RESULT:
                history.append(_block("user", f"[Tool Result] {entry.content}"))

        while history and history[0]["role"] == "model":
            history.pop(0)

        merged: list[HistoryBlock] = []
        for block in history:
            if merged and merged[-1]["role"] == block["role"]:
                merged[-1]["parts"].extend(block["parts"])
            else:
                merged.append(block)

        while merged and merged[-1]["role"] == "user":
            merged.pop()

        return merged

    @property
    def entry_count(self) -> int:
        return len(self._entries)


def _block(role: str, text: str) -> HistoryBlock:
    return {"role": role, "parts": [{"text": text}]}
