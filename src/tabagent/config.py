"""
Configuration for the agent system.

All configuration is loaded from environment variables. Two optional env
files are read first, without overriding anything already exported:
~/.tabagent/config.env (written once per machine) and ./.env (per project).
Priority is therefore: process env > global file > local file > defaults.
"""

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

GLOBAL_CONFIG_FILE = Path.home() / ".tabagent" / "config.env"
LOCAL_ENV_FILE = Path(".env")

API_KEY_PLACEHOLDER = "your_api_key_here"


class ConfigError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


def load_env_files(
    global_file: Path = GLOBAL_CONFIG_FILE,
    local_file: Path = LOCAL_ENV_FILE,
) -> None:
    """Load env files into os.environ, keeping values that are already set."""
    for path in (global_file, local_file):
        if path.exists():
            load_dotenv(path, override=False)


@dataclass
class LLMConfig:
    """Configuration for the Gemini client."""
    api_key: str = ""
    model: str = "gemini-2.0-flash"
    base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    temperature: float = 0.7
    max_tokens: int = 8192

    @classmethod
    def from_env(cls) -> "LLMConfig":
        """Load configuration from environment variables."""
        return cls(
            api_key=os.getenv("GEMINI_API_KEY", ""),
            model=os.getenv("GEMINI_MODEL", "gemini-2.0-flash"),
            base_url=os.getenv(
                "GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta"
            ),
            temperature=float(os.getenv("LLM_TEMPERATURE", "0.7")),
            max_tokens=int(os.getenv("LLM_MAX_TOKENS", "8192")),
        )

    def validate(self) -> None:
        if not self.api_key or self.api_key == API_KEY_PLACEHOLDER:
            raise ConfigError(
                "GEMINI_API_KEY is not set.\n"
                "  1. Get a key at https://aistudio.google.com/apikey\n"
                f"  2. Put GEMINI_API_KEY=... in {GLOBAL_CONFIG_FILE} or ./.env"
            )


@dataclass
class BrowserConfig:
    """
    Configuration for the remote Chrome connection.

    Chrome must be started with --remote-debugging-port matching cdp_port.
    """
    cdp_host: str = "localhost"
    cdp_port: int = 9222
    navigation_timeout_ms: int = 15000
    page_text_limit: int = 5000
    max_wait_ms: int = 30000
    screenshots_dir: str = "./screenshots"

    @classmethod
    def from_env(cls) -> "BrowserConfig":
        """Load configuration from environment variables."""
        return cls(
            cdp_host=os.getenv("CDP_HOST", "localhost"),
            cdp_port=int(os.getenv("CDP_PORT", "9222")),
            navigation_timeout_ms=int(os.getenv("NAVIGATION_TIMEOUT_MS", "15000")),
            page_text_limit=int(os.getenv("PAGE_TEXT_LIMIT", "5000")),
            max_wait_ms=int(os.getenv("MAX_WAIT_MS", "30000")),
            screenshots_dir=os.getenv("SCREENSHOTS_DIR", "./screenshots"),
        )


@dataclass
class SessionConfig:
    """
    Configuration for session logs and cross-session memory.

    context_turns is the number of user/model turns rebuilt into the model
    history when a session is resumed; each turn is two entries.
    """
    sessions_dir: str = "./sessions"
    context_turns: int = 50
    memory_recent: int = 10

    @classmethod
    def from_env(cls) -> "SessionConfig":
        """Load configuration from environment variables."""
        return cls(
            sessions_dir=os.getenv("SESSIONS_DIR", "./sessions"),
            context_turns=int(os.getenv("CONTEXT_TURNS", "50")),
            memory_recent=int(os.getenv("MEMORY_RECENT", "10")),
        )

    @property
    def memory_file(self) -> Path:
        return Path(self.sessions_dir).resolve() / "memory.jsonl"


@dataclass
class LoopConfig:
    """Configuration for the orchestrator's turn loop."""
    compact_threshold: int = 12
    rate_limit_retries: int = 5
    rate_limit_cooldown: float = 30.0
    interrupt_exit_window: float = 2.0

    @classmethod
    def from_env(cls) -> "LoopConfig":
        """Load configuration from environment variables."""
        return cls(
            compact_threshold=int(os.getenv("COMPACT_THRESHOLD", "12")),
            rate_limit_retries=int(os.getenv("RATE_LIMIT_RETRIES", "5")),
            rate_limit_cooldown=float(os.getenv("RATE_LIMIT_COOLDOWN", "30")),
            interrupt_exit_window=float(os.getenv("INTERRUPT_EXIT_WINDOW", "2")),
        )


@dataclass
class AgentConfig:
    """Combined configuration for the entire agent system."""
    llm: LLMConfig
    browser: BrowserConfig
    session: SessionConfig
    loop: LoopConfig

    @classmethod
    def from_env(cls, load_files: bool = True) -> "AgentConfig":
        """Load all configuration from environment variables."""
        if load_files:
            load_env_files()
        return cls(
            llm=LLMConfig.from_env(),
            browser=BrowserConfig.from_env(),
            session=SessionConfig.from_env(),
            loop=LoopConfig.from_env(),
        )
