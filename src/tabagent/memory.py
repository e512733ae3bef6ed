"""
Memory - Cross-session task summaries.

A single newline-delimited JSON log shared by every session. The
orchestrator appends a short summary whenever it compacts the context or a
session ends; a fresh conversation is then seeded with the most recent
entries so the model knows what was already done, even after a restart.

The log is strictly append-only. Only the most recent N entries are ever
loaded; older ones stay on disk.
"""

import json
import logging
from datetime import UTC, datetime
from pathlib import Path

from tabagent.types import MemoryEntry, MemoryType, parse_timestamp

logger = logging.getLogger(__name__)

DEFAULT_RECENT = 10


def time_ago(then: datetime, now: datetime | None = None) -> str:
    """Human-relative age: 'just now', '3m ago', '2h ago', '4d ago'."""
    now = now or datetime.now(UTC)
    seconds = int((now - then).total_seconds())
    if seconds < 60:
        return "just now"
    minutes = seconds // 60
    if minutes < 60:
        return f"{minutes}m ago"
    hours = minutes // 60
    if hours < 24:
        return f"{hours}h ago"
    return f"{hours // 24}d ago"


class MemoryLog:
    """Append-only log of MemoryEntry records."""

    def __init__(self, path: str | Path, recent: int = DEFAULT_RECENT) -> None:
        self.path = Path(path)
        self.recent = recent

    def save(self, type: MemoryType, task: str, summary: str) -> MemoryEntry:
        """Append a memory entry."""
        entry = MemoryEntry(type=type, task=task, summary=summary)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(json.dumps(entry.to_dict(), ensure_ascii=False) + "\n")
        logger.info(f"Saved {type.value} memory for task: {task[:60]}")
        return entry

    def load_recent(self, count: int | None = None) -> list[MemoryEntry]:
        """Load the last `count` entries, oldest first."""
        count = self.recent if count is None else count
        if count <= 0 or not self.path.exists():
            return []

        with open(self.path, encoding="utf-8") as f:
            lines = [line for line in f if line.strip()]

        entries: list[MemoryEntry] = []
        for line in lines[-count:]:
            try:
                entries.append(MemoryEntry.from_dict(json.loads(line)))
            except (json.JSONDecodeError, KeyError, ValueError) as e:
                logger.warning(f"Skipping malformed memory entry: {e}")
        return entries

    def format_for_context(self, now: datetime | None = None) -> str:
        """
        Format recent memories as extra model context.

        Returns an empty string when there is nothing to remember.
        """
        memories = self.load_recent()
        if not memories:
            return ""

        lines = [
            f"- [{time_ago(parse_timestamp(m.timestamp), now)}] {m.task}: {m.summary}"
            for m in memories
        ]
        return (
            f"\n\n## Recent Memory ({len(memories)} entries)\n"
            "These are summaries of your previous sessions and tasks:\n"
            + "\n".join(lines)
            + "\n\nUse this context to avoid repeating work that is already done "
            "and to understand what has been done before."
        )
