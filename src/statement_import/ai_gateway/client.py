"""
AI gateway client (OpenAI-compatible chat completions over httpx).

Errors are split by what a caller can do about them:
- AIGatewayTimeoutError, AIGatewayUnavailableError: try again later
  (timeouts, network failures, 429 and 5xx answers)
- AIGatewayResponseError: the request or the answer is unusable
  (other 4xx answers, bodies that are not a chat completion)
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from ..config import AIGatewayConfig

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


class AIGatewayError(Exception):
    """Base exception for AI gateway errors."""

    retryable = False

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class AIGatewayTimeoutError(AIGatewayError):
    """The gateway did not answer in time."""

    retryable = True


class AIGatewayUnavailableError(AIGatewayError):
    """Network failure, rate limit or server error."""

    retryable = True


class AIGatewayResponseError(AIGatewayError):
    """Rejected request or unusable answer."""

    retryable = False


@dataclass
class ChatResult:
    """A chat completion reduced to what the invokers need."""

    content: str
    model: str
    tool_arguments: str | None = None
    usage: dict[str, Any] = field(default_factory=dict)


class AIGatewayClient:
    """
    Client for an OpenAI-compatible `/chat/completions` endpoint.

    The underlying httpx.Client is shared by all worker threads.
    """

    def __init__(self, config: AIGatewayConfig, http_client: httpx.Client | None = None):
        self.config = config
        self.url = f"{config.base_url.rstrip('/')}/chat/completions"
        headers = {"Content-Type": "application/json"}
        if config.api_key:
            headers["Authorization"] = f"Bearer {config.api_key}"

        self._client = http_client or httpx.Client(
            timeout=self._timeout(config.timeout_seconds),
            headers=headers,
        )

    @staticmethod
    def _timeout(read_seconds: float) -> httpx.Timeout:
        # connect/write/pool stay short, read covers model inference
        return httpx.Timeout(connect=10.0, read=float(read_seconds), write=30.0, pool=10.0)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "AIGatewayClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def chat(
        self,
        model: str,
        system_prompt: str,
        user_message: str,
        timeout: float | None = None,
        tools: list[dict[str, Any]] | None = None,
        tool_choice: dict[str, Any] | None = None,
        max_tokens: int | None = None,
    ) -> ChatResult:
        """
        Send one chat completion request.

        Args:
            model: Model identifier
            system_prompt: System message
            user_message: User message
            timeout: Per-call timeout in seconds (capped by the configured timeout)
            tools: Optional function-calling tool definitions
            tool_choice: Optional forced tool choice
            max_tokens: Completion token limit (defaults to config)

        Raises:
            AIGatewayTimeoutError, AIGatewayUnavailableError: retryable failures
            AIGatewayResponseError: non-retryable failures
        """
        payload: dict[str, Any] = {
            "model": model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_message},
            ],
            "max_tokens": max_tokens or self.config.max_tokens,
        }
        if tools:
            payload["tools"] = tools
        if tool_choice:
            payload["tool_choice"] = tool_choice

        read_timeout = self.config.timeout_seconds
        if timeout is not None:
            read_timeout = min(read_timeout, timeout)

        logger.debug("Calling %s at %s (timeout %.0fs)", model, self.url, read_timeout)

        try:
            response = self._client.post(
                self.url, json=payload, timeout=self._timeout(read_timeout)
            )
            response.raise_for_status()
        except httpx.TimeoutException as e:
            logger.warning("AI gateway request timed out after %.0fs", read_timeout)
            raise AIGatewayTimeoutError(f"AI gateway timed out after {read_timeout:.0f}s") from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            body = e.response.text[:500]
            logger.error("AI gateway error %s for model '%s': %s", status, model, body)
            if status in RETRYABLE_STATUS_CODES:
                raise AIGatewayUnavailableError(
                    f"AI gateway unavailable (HTTP {status})", status
                ) from e
            raise AIGatewayResponseError(
                f"AI gateway rejected request (HTTP {status})", status
            ) from e
        except httpx.RequestError as e:
            logger.error("AI gateway request failed: %s (URL: %s)", e, self.url)
            raise AIGatewayUnavailableError(f"AI gateway request failed: {e}") from e

        try:
            data = response.json()
            message = data["choices"][0]["message"]
        except (json.JSONDecodeError, KeyError, IndexError, TypeError) as e:
            raise AIGatewayResponseError(
                "AI gateway returned an unexpected body", response.status_code
            ) from e

        tool_arguments = None
        tool_calls = message.get("tool_calls") or []
        if tool_calls:
            tool_arguments = (tool_calls[0].get("function") or {}).get("arguments")

        content = message.get("content") or ""
        logger.debug("%s returned %d chars", model, len(content or tool_arguments or ""))
        return ChatResult(
            content=content,
            model=data.get("model", model),
            tool_arguments=tool_arguments,
            usage=data.get("usage") or {},
        )
