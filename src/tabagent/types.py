"""
Core types for the agent system.

These are the records that flow between the orchestrator, the tool router
and the persistence layer. Conversation entries and memory entries are
written to newline-delimited JSON logs, so each knows how to convert itself
to and from a plain dict.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class Role(str, Enum):
    """Who produced a conversation entry."""
    USER = "user"
    MODEL = "model"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    SYSTEM = "system"


class MemoryType(str, Enum):
    """Why a cross-session memory entry was recorded."""
    COMPACTION = "compaction"
    SESSION_END = "session_end"
    TASK_COMPLETE = "task_complete"


def utc_now_iso() -> str:
    """Current time as an ISO-8601 string with millisecond precision."""
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    """Parse a timestamp written by utc_now_iso (or any ISO-8601 string)."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


@dataclass(frozen=True)
class ConversationEntry:
    """
    One event in a session log.

    Entries are immutable once appended. Tool calls and results carry their
    payload as JSON (calls) or plain text (results) in `content`.
    """
    role: Role
    content: str
    timestamp: str = field(default_factory=utc_now_iso)
    metadata: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "timestamp": self.timestamp,
            "role": self.role.value,
            "content": self.content,
        }
        if self.metadata is not None:
            result["metadata"] = self.metadata
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConversationEntry":
        return cls(
            role=Role(data["role"]),
            content=data.get("content", ""),
            timestamp=data.get("timestamp") or utc_now_iso(),
            metadata=data.get("metadata"),
        )


@dataclass(frozen=True)
class MemoryEntry:
    """A durable summary of earlier work, shared across sessions."""
    type: MemoryType
    task: str
    summary: str
    timestamp: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "type": self.type.value,
            "task": self.task,
            "summary": self.summary,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MemoryEntry":
        return cls(
            type=MemoryType(data["type"]),
            task=data.get("task", ""),
            summary=data.get("summary", ""),
            timestamp=data.get("timestamp") or utc_now_iso(),
        )


@dataclass
class BrowserTab:
    """
    A page target reported by the browser.

    Ephemeral: re-fetched on every listing, never persisted.
    """
    id: str
    title: str
    url: str
    debugger_url: str | None = None


@dataclass
class ToolCall:
    """A request from the model to run a named tool."""
    name: str
    args: dict[str, Any] = field(default_factory=dict)

    def to_json_payload(self) -> dict[str, Any]:
        return {"name": self.name, "args": self.args}


@dataclass
class ToolResult:
    """
    The text outcome of a tool call.

    The result text is what gets shown to the user and sent back to the
    model as the function response.
    """
    name: str
    content: str

    @property
    def is_error(self) -> bool:
        return self.content.startswith("ERROR") or self.content.startswith("Tool error")

    def to_function_response(self) -> dict[str, Any]:
        return {"name": self.name, "response": {"result": self.content}}
