import json

import httpx
import pytest
from claude_agent_sdk import ClaudeSDKError

from whitechat.agent import client as client_module
from whitechat.agent.client import (
    ClaudeCompletionClient,
    HttpCompletionClient,
    build_completion_client,
)
from whitechat.config import FALLBACK_REPLY
from whitechat.core.errors import CompletionError

HISTORY = [{"role": "user", "content": "What is the UPSC prelims syllabus?"}]


def _client(handler, api_key="sk-test") -> HttpCompletionClient:
    return HttpCompletionClient(
        base_url="https://llm.example/v1",
        api_key=api_key,
        model="test-model",
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_http_completion_returns_reply():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200, json={"choices": [{"message": {"role": "assistant", "content": " Two papers. "}}]}
        )

    client = _client(handler)
    reply = await client.complete("Be brief.", HISTORY)
    await client.close()

    assert reply == "Two papers."
    assert seen["url"] == "https://llm.example/v1/chat/completions"
    assert seen["auth"] == "Bearer sk-test"
    assert seen["body"]["model"] == "test-model"
    assert seen["body"]["messages"] == [{"role": "system", "content": "Be brief."}, *HISTORY]


@pytest.mark.asyncio
async def test_http_completion_empty_reply_uses_fallback():
    client = _client(lambda request: httpx.Response(200, json={"choices": []}))
    assert await client.complete("Be brief.", HISTORY) == FALLBACK_REPLY
    await client.close()


@pytest.mark.asyncio
async def test_http_completion_error_status():
    client = _client(lambda request: httpx.Response(503, json={"error": "overloaded"}))
    with pytest.raises(CompletionError):
        await client.complete("Be brief.", HISTORY)
    await client.close()


@pytest.mark.asyncio
async def test_http_completion_accepts_any_success_status():
    client = _client(
        lambda request: httpx.Response(201, json={"choices": [{"message": {"content": "Created."}}]})
    )
    assert await client.complete("Be brief.", HISTORY) == "Created."
    await client.close()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [
        [],
        {"choices": [None]},
        {"choices": ["x"]},
        {"choices": {"message": "x"}},
        {"choices": [{"message": None}]},
        {"choices": [{"message": {"content": 42}}]},
    ],
)
async def test_http_completion_malformed_body(body):
    client = _client(lambda request: httpx.Response(200, json=body))
    with pytest.raises(CompletionError):
        await client.complete("Be brief.", HISTORY)
    await client.close()


@pytest.mark.asyncio
async def test_http_completion_transport_failure():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = _client(handler)
    with pytest.raises(CompletionError):
        await client.complete("Be brief.", HISTORY)
    await client.close()


@pytest.mark.asyncio
async def test_http_completion_requires_api_key():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={})

    client = _client(handler, api_key="")
    with pytest.raises(CompletionError):
        await client.complete("Be brief.", HISTORY)
    assert calls == []
    await client.close()


class _FailingSDKClient:
    def __init__(self, options) -> None:
        self.options = options

    async def __aenter__(self):
        raise ClaudeSDKError("CLI not found")

    async def __aexit__(self, *exc) -> None:
        return None


class _SilentSDKClient:
    def __init__(self, options) -> None:
        self.options = options
        self.prompt = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc) -> None:
        return None

    async def query(self, prompt: str) -> None:
        self.prompt = prompt

    async def receive_response(self):
        for message in []:
            yield message


@pytest.mark.asyncio
async def test_claude_completion_wraps_sdk_errors(monkeypatch):
    monkeypatch.setattr(client_module, "ClaudeSDKClient", _FailingSDKClient)
    with pytest.raises(CompletionError):
        await ClaudeCompletionClient(model="test-model").complete("Be brief.", HISTORY)


@pytest.mark.asyncio
async def test_claude_completion_without_text_uses_fallback(monkeypatch):
    monkeypatch.setattr(client_module, "ClaudeSDKClient", _SilentSDKClient)
    reply = await ClaudeCompletionClient(model="test-model").complete("Be brief.", HISTORY)
    assert reply == FALLBACK_REPLY


@pytest.mark.asyncio
async def test_build_completion_client():
    assert isinstance(build_completion_client("claude"), ClaudeCompletionClient)
    http_client = build_completion_client("http")
    assert isinstance(http_client, HttpCompletionClient)
    await http_client.close()
    with pytest.raises(ValueError):
        build_completion_client("carrier-pigeon")
