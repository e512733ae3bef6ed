"""Prompt templates for the browser agent."""

from pathlib import Path

PROMPTS_DIR = Path(__file__).parent


def load_system_prompt() -> str:
    """Load the system instruction sent with every model request."""
    return (PROMPTS_DIR / "system.md").read_text(encoding="utf-8")


__all__ = [
    "PROMPTS_DIR",
    "load_system_prompt",
]
