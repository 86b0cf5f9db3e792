import logging
from typing import Protocol

import httpx
from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ClaudeSDKClient,
    ClaudeSDKError,
    ResultMessage,
    TextBlock,
)

from ..config import (
    COMPLETION_API_KEY,
    COMPLETION_API_URL,
    COMPLETION_BACKEND,
    COMPLETION_TIMEOUT_SECS,
    FALLBACK_REPLY,
    MODEL,
)
from ..core.errors import CompletionError
from .prompts import build_transcript

logger = logging.getLogger(__name__)


class CompletionClient(Protocol):
    async def complete(self, system_directive: str, history: list[dict]) -> str:
        """Return the assistant's reply to ``history``. Raises CompletionError."""
        ...

    async def close(self) -> None: ...


def _reply_or_fallback(text: str | None) -> str:
    if text is None or not text.strip():
        return FALLBACK_REPLY
    return text.strip()


def _extract_reply(data) -> str | None:
    """Pull the first choice's text out of a chat completions body."""
    if not isinstance(data, dict):
        raise CompletionError("Completion endpoint returned an unexpected body")
    choices = data.get("choices") or []
    if not isinstance(choices, list):
        raise CompletionError("Completion endpoint returned malformed choices")
    if not choices:
        return None
    choice = choices[0]
    message = choice.get("message") if isinstance(choice, dict) else None
    if not isinstance(message, dict):
        raise CompletionError("Completion endpoint returned a choice without a message")
    text = message.get("content")
    if text is not None and not isinstance(text, str):
        raise CompletionError("Completion endpoint returned non-text content")
    return text


class ClaudeCompletionClient:
    """Single-turn completions through the Claude Agent SDK, with no tools enabled."""

    def __init__(self, model: str = MODEL) -> None:
        self._model = model

    async def complete(self, system_directive: str, history: list[dict]) -> str:
        options = ClaudeAgentOptions(
            system_prompt=system_directive,
            model=self._model,
            allowed_tools=[],
            max_turns=1,
        )
        parts: list[str] = []
        try:
            async with ClaudeSDKClient(options=options) as client:
                await client.query(build_transcript(history))
                async for message in client.receive_response():
                    if isinstance(message, AssistantMessage):
                        for block in message.content:
                            if isinstance(block, TextBlock) and block.text:
                                parts.append(block.text)
                    elif isinstance(message, ResultMessage) and message.is_error:
                        raise CompletionError(f"Completion failed: {message.result}")
        except ClaudeSDKError as e:
            logger.exception("Error in completion request")
            raise CompletionError(f"Completion request failed: {e}") from e
        return _reply_or_fallback("".join(parts))

    async def close(self) -> None:
        pass


class HttpCompletionClient:
    """Completions against an OpenAI-compatible ``/chat/completions`` endpoint."""

    def __init__(
        self,
        base_url: str = COMPLETION_API_URL,
        api_key: str = COMPLETION_API_KEY,
        model: str = MODEL,
        timeout: float = COMPLETION_TIMEOUT_SECS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"), timeout=timeout, transport=transport
        )

    async def complete(self, system_directive: str, history: list[dict]) -> str:
        if not self._api_key:
            raise CompletionError("No completion API key configured")

        payload = {
            "model": self._model,
            "messages": [{"role": "system", "content": system_directive}, *history],
        }
        try:
            res = await self._client.post(
                "/chat/completions",
                json=payload,
                headers={"Authorization": f"Bearer {self._api_key}"},
            )
        except httpx.HTTPError as e:
            raise CompletionError(f"Completion request failed: {e}") from e

        if not res.is_success:
            raise CompletionError(f"Completion endpoint returned {res.status_code}")

        try:
            data = res.json()
        except ValueError as e:
            raise CompletionError("Completion endpoint returned invalid JSON") from e

        return _reply_or_fallback(_extract_reply(data))

    async def close(self) -> None:
        await self._client.aclose()


def build_completion_client(backend: str = COMPLETION_BACKEND) -> CompletionClient:
    if backend == "claude":
        return ClaudeCompletionClient()
    if backend == "http":
        return HttpCompletionClient()
    raise ValueError(f"Unknown completion backend: {backend}")
