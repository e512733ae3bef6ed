"""
LLM Client - Gemini generateContent over plain HTTP.

The client is stateless; a ChatSession holds the running list of contents.
A turn is appended to the chat only when the request succeeds, so a failed
send can simply be retried on the same chat.

Timeouts, network errors and 503s are retried here. Rate limits (429) are
NOT: they are raised as LLMError carrying the server's suggested delay, and
the orchestrator decides how long to back off and whether to reset context.
"""

import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import httpx

from tabagent.config import LLMConfig
from tabagent.prompts import load_system_prompt
from tabagent.types import ToolCall, ToolResult

logger = logging.getLogger(__name__)

# Default timeout configuration (in seconds)
DEFAULT_CONNECT_TIMEOUT = 10.0
DEFAULT_READ_TIMEOUT = 180.0
DEFAULT_WRITE_TIMEOUT = 10.0
DEFAULT_POOL_TIMEOUT = 10.0

# Retry configuration for transient failures
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY = 5.0

RETRY_INFO_TYPE = "type.googleapis.com/google.rpc.RetryInfo"

Content = dict[str, Any]


class LLMError(Exception):
    """Error from the model API."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after


def _parse_duration(value: str) -> float | None:
    """Parse '7s' / '7.5s' (protobuf Duration JSON) or a bare number of seconds."""
    match = re.fullmatch(r"\s*(\d+(?:\.\d+)?)s?\s*", value)
    return float(match.group(1)) if match else None


def parse_retry_after(response: httpx.Response) -> float | None:
    """
    Server-suggested retry delay for a failed response.

    The structured google.rpc.RetryInfo detail wins; the Retry-After header
    is the fallback.
    """
    try:
        details = response.json().get("error", {}).get("details", [])
    except ValueError:
        details = []
    for detail in details if isinstance(details, list) else []:
        if isinstance(detail, dict) and detail.get("@type") == RETRY_INFO_TYPE:
            delay = _parse_duration(str(detail.get("retryDelay", "")))
            if delay is not None:
                return delay

    header = response.headers.get("Retry-After")
    if header:
        return _parse_duration(header)
    return None


@dataclass
class ModelResponse:
    """
    What the model wants next.

    type is "text" (a final answer) or "function_calls" (run these tools);
    function-call responses may carry accompanying text.
    """
    type: str
    text: str | None = None
    calls: list[ToolCall] = field(default_factory=list)

    @property
    def has_function_calls(self) -> bool:
        return self.type == "function_calls"


def parse_response(data: dict[str, Any]) -> ModelResponse:
    """Interpret a generateContent response body."""
    candidates = data.get("candidates") or []
    if not candidates:
        block_reason = (data.get("promptFeedback") or {}).get("blockReason")
        if block_reason:
            return ModelResponse(type="text", text=f"(Response blocked: {block_reason})")
        return ModelResponse(type="text", text="(No response from model)")

    candidate = candidates[0]
    finish_reason = candidate.get("finishReason")
    parts = (candidate.get("content") or {}).get("parts") or []

    calls: list[ToolCall] = []
    texts: list[str] = []
    for part in parts:
        if "functionCall" in part:
            fc = part["functionCall"]
            calls.append(ToolCall(name=fc["name"], args=fc.get("args") or {}))
        if part.get("text"):
            texts.append(part["text"])

    if calls:
        return ModelResponse(
            type="function_calls",
            text="\n".join(texts) if texts else None,
            calls=calls,
        )

    text = "\n".join(texts)
    if not text.strip():
        if finish_reason == "SAFETY":
            return ModelResponse(type="text", text="(Response filtered by safety settings)")
        if finish_reason == "MAX_TOKENS":
            return ModelResponse(type="text", text="(Response cut off — token limit reached)")
        return ModelResponse(type="text", text="(Model returned empty response)")
    return ModelResponse(type="text", text=text)


@dataclass
class ChatSession:
    """The live conversation contents sent with each request."""
    contents: list[Content] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.contents)


class GeminiClient:
    """
    Synchronous client for the Gemini generateContent endpoint.

    Includes timeout and retry logic for resilience against API hangs.
    """

    def __init__(
        self,
        config: LLMConfig | None = None,
        tools: list[dict[str, Any]] | None = None,
        system_prompt: str | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config or LLMConfig.from_env()
        self.tools = tools or []
        self.system_prompt = system_prompt if system_prompt is not None else load_system_prompt()
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._sleep = sleep

        timeout = httpx.Timeout(
            connect=DEFAULT_CONNECT_TIMEOUT,
            read=DEFAULT_READ_TIMEOUT,
            write=DEFAULT_WRITE_TIMEOUT,
            pool=DEFAULT_POOL_TIMEOUT,
        )
        self._client = httpx.Client(
            base_url=self.config.base_url,
            headers={
                "x-goog-api-key": self.config.api_key,
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    def start_chat(self, history: list[Content] | None = None) -> ChatSession:
        """Start a chat, optionally seeded with prior user/model turns."""
        return ChatSession(contents=[dict(c) for c in history or []])

    def send_message(self, chat: ChatSession, text: str) -> ModelResponse:
        return self._send(chat, {"role": "user", "parts": [{"text": text}]})

    def send_function_results(self, chat: ChatSession, results: list[ToolResult]) -> ModelResponse:
        """Send every result of one batch of function calls as a single turn."""
        parts = [{"functionResponse": r.to_function_response()} for r in results]
        return self._send(chat, {"role": "user", "parts": parts})

    def _send(self, chat: ChatSession, user_content: Content) -> ModelResponse:
        data = self._generate(chat.contents + [user_content])
        response = parse_response(data)

        candidates = data.get("candidates") or []
        model_content = (candidates[0].get("content") or {}) if candidates else {}
        if model_content.get("parts"):
            chat.contents.append(user_content)
            chat.contents.append({"role": "model", "parts": model_content["parts"]})
        return response

    def _payload(self, contents: list[Content]) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "contents": contents,
            "generationConfig": {
                "temperature": self.config.temperature,
                "maxOutputTokens": self.config.max_tokens,
            },
        }
        if self.system_prompt:
            payload["systemInstruction"] = {"parts": [{"text": self.system_prompt}]}
        if self.tools:
            payload["tools"] = [{"functionDeclarations": self.tools}]
        return payload

    def _generate(self, contents: list[Content]) -> dict[str, Any]:
        """
        POST generateContent with automatic retry on transient failures.

        Raises:
            LLMError: on rate limits, non-retryable HTTP errors, or when
                all retries are exhausted
        """
        payload = self._payload(contents)
        path = f"/models/{self.config.model}:generateContent"
        last_error: Exception | None = None

        for attempt in range(self.max_retries + 1):
            if attempt > 0:
                logger.info(f"Retry attempt {attempt}/{self.max_retries} after {self.retry_delay}s delay...")
                self._sleep(self.retry_delay)

            logger.debug(f"Sending generateContent with {len(contents)} contents (attempt {attempt + 1})")

            try:
                response = self._client.post(path, json=payload)
                response.raise_for_status()
                return response.json()

            except httpx.TimeoutException as e:
                logger.warning(f"Request timed out (attempt {attempt + 1}): {e}")
                last_error = e
                continue

            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                if status == 503:
                    logger.warning(f"Service unavailable (attempt {attempt + 1}): {e}")
                    last_error = e
                    continue

                retry_after = parse_retry_after(e.response)
                if status == 429:
                    logger.warning(f"Rate limited by model API (retry after: {retry_after})")
                else:
                    logger.error(f"HTTP error: {status} - {e.response.text}")
                raise LLMError(
                    f"HTTP {status}: {e.response.text}",
                    status_code=status,
                    retry_after=retry_after,
                ) from e

            except httpx.RequestError as e:
                logger.warning(f"Request error (attempt {attempt + 1}): {e}")
                last_error = e
                continue

            except ValueError as e:
                raise LLMError(f"Invalid JSON from model API: {e}") from e

        logger.error(f"All {self.max_retries + 1} attempts failed. Last error: {last_error}")
        raise LLMError(
            f"Request failed after {self.max_retries + 1} attempts: {last_error}"
        ) from last_error

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> "GeminiClient":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()
