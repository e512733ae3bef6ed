"""
tabagent - A model-driven agent for the browser you already have open.

The agent attaches to a running Chrome over its remote debugging port and
to a local working directory, and lets a Gemini model act on both through
named tool calls:

1. Browser session: one attached tab, reconnected transparently when the
   debugging connection drops
2. Element resolution: human descriptions ("Submit", "search") turned into
   one DOM element through a layered matching strategy
3. Session log: every event appended to a per-session JSONL file, with a
   bounded history rebuilt for the model
4. Orchestration: sequential tool execution, rate-limit backoff, context
   compaction and cooperative interruption
"""

__version__ = "0.1.0"

from tabagent.browser import BrowserSession, BrowserState
from tabagent.cdp import CDPTransport
from tabagent.config import AgentConfig
from tabagent.llm import GeminiClient, LLMError
from tabagent.loop import AgentLoop, TurnResult, TurnState
from tabagent.memory import MemoryLog
from tabagent.resolver import ElementKind, ElementResolver, choose_element
from tabagent.session import Session
from tabagent.tools import Tool, ToolRouter, create_default_router
from tabagent.types import (
    BrowserTab,
    ConversationEntry,
    MemoryEntry,
    MemoryType,
    Role,
    ToolCall,
    ToolResult,
)
from tabagent.workspace import Workspace

__all__ = [
    "AgentConfig",
    "AgentLoop",
    "BrowserSession",
    "BrowserState",
    "BrowserTab",
    "CDPTransport",
    "ConversationEntry",
    "ElementKind",
    "ElementResolver",
    "GeminiClient",
    "LLMError",
    "MemoryEntry",
    "MemoryLog",
    "MemoryType",
    "Role",
    "Session",
    "Tool",
    "ToolCall",
    "ToolResult",
    "ToolRouter",
    "TurnResult",
    "TurnState",
    "Workspace",
    "choose_element",
    "create_default_router",
]
