"""
Tests for LLM backends, the retry wrapper and stream accumulation.
Run with: pytest tests/test_backends.py
"""

import os

import httpx
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from switchboard.backends import create_backend
from switchboard.backends.base import BackendResponse
from switchboard.backends.openai_compat import OpenAICompatibleBackend
from switchboard.backends.openrouter import OpenRouterBackend
from switchboard.backends.retry_wrapper import RetryableBackendWrapper
from switchboard.backends.streaming import StreamAccumulator, parse_sse_line
from switchboard.errors import ProtocolError, TransportError


# ---------------------------------------------------------------------------
# BackendResponse
# ---------------------------------------------------------------------------

def test_backend_response_ok():
    """BackendResponse reports ok/error correctly."""
    ok = BackendResponse(ok=True, data={"choices": [{"message": {"content": "hi"}, "finish_reason": "stop"}]})
    assert ok.ok
    assert ok.content == "hi"
    assert ok.finish_reason == "stop"
    assert ok.tool_calls == []

    err = BackendResponse(ok=False, error="timeout")
    assert not err.ok
    assert err.content == ""
    assert err.finish_reason is None


def test_backend_response_tool_calls():
    call = {"id": "c1", "type": "function", "function": {"name": "x", "arguments": "{}"}}
    resp = BackendResponse(ok=True, data={"choices": [{"message": {"content": None, "tool_calls": [call]}}]})
    assert resp.content == ""
    assert resp.tool_calls == [call]


# ---------------------------------------------------------------------------
# OpenRouterBackend
# ---------------------------------------------------------------------------

def test_openrouter_env_resolution():
    """OpenRouter resolves ${ENV_VAR} API keys."""
    with patch.dict(os.environ, {"TEST_OR_KEY": "sk-test"}):
        b = OpenRouterBackend(name="or", api_key="${TEST_OR_KEY}")
    assert b.api_key == "sk-test"
    assert b.url == "https://openrouter.ai/api/v1"


def test_openrouter_cost_extraction():
    assert OpenRouterBackend._extract_cost({"usage": {"cost": "0.002"}}) == 0.002
    assert OpenRouterBackend._extract_cost({"cost_usd": 0.5}) == 0.5
    assert OpenRouterBackend._extract_cost({}) is None


@pytest.mark.asyncio
async def test_openrouter_no_api_key():
    """Without a key the request is refused locally."""
    b = OpenRouterBackend(name="or", api_key="")
    result = await b.forward({"model": "x", "messages": []})
    assert not result.ok
    assert result.status_code == 401


@pytest.mark.asyncio
async def test_openrouter_forward_error_body():
    """An error object without choices is a failed response."""
    b = OpenRouterBackend(name="or", api_key="k")

    mock_resp = MagicMock()
    mock_resp.status_code = 200
    mock_resp.json.return_value = {"error": {"message": "model not found"}}

    with patch("switchboard.backends.openai_compat.httpx.AsyncClient") as mock_client_cls:
        mock_client = AsyncMock()
        mock_client.post.return_value = mock_resp
        mock_client.__aenter__ = AsyncMock(return_value=mock_client)
        mock_client.__aexit__ = AsyncMock(return_value=False)
        mock_client_cls.return_value = mock_client

        result = await b.forward({"model": "nope", "messages": []})

    assert not result.ok
    assert result.error == "model not found"


@pytest.mark.asyncio
async def test_openrouter_forward_reports_cost():
    b = OpenRouterBackend(name="or", api_key="k")

    mock_resp = MagicMock()
    mock_resp.status_code = 200
    mock_resp.json.return_value = {"choices": [{"message": {"content": "hi"}}], "usage": {"cost": 0.01}}

    with patch("switchboard.backends.openai_compat.httpx.AsyncClient") as mock_client_cls:
        mock_client = AsyncMock()
        mock_client.post.return_value = mock_resp
        mock_client.__aenter__ = AsyncMock(return_value=mock_client)
        mock_client.__aexit__ = AsyncMock(return_value=False)
        mock_client_cls.return_value = mock_client

        result = await b.forward({"model": "a/b", "messages": []})

    assert result.ok
    assert result.cost_usd == 0.01
    headers = mock_client.post.call_args.kwargs["headers"]
    assert headers["X-Title"] == "Switchboard"
    assert headers["Authorization"] == "Bearer k"


# ---------------------------------------------------------------------------
# OpenAICompatibleBackend
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_openai_compat_forward_success():
    b = OpenAICompatibleBackend(name="local", url="http://fake:8080/v1/", api_key="k")
    assert b.url == "http://fake:8080/v1"

    mock_resp = MagicMock()
    mock_resp.status_code = 200
    mock_resp.json.return_value = {"choices": [{"message": {"content": "hello"}}]}

    with patch("switchboard.backends.openai_compat.httpx.AsyncClient") as mock_client_cls:
        mock_client = AsyncMock()
        mock_client.post.return_value = mock_resp
        mock_client.__aenter__ = AsyncMock(return_value=mock_client)
        mock_client.__aexit__ = AsyncMock(return_value=False)
        mock_client_cls.return_value = mock_client

        result = await b.forward({"model": "m", "messages": []})

    assert result.ok
    assert result.content == "hello"
    assert result.backend_name == "local"
    url = mock_client.post.call_args.args[0]
    assert url == "http://fake:8080/v1/chat/completions"
    assert mock_client.post.call_args.kwargs["headers"]["Authorization"] == "Bearer k"


@pytest.mark.asyncio
async def test_openai_compat_forward_timeout():
    b = OpenAICompatibleBackend(name="local", url="http://fake:8080/v1", timeout=1)

    with patch("switchboard.backends.openai_compat.httpx.AsyncClient") as mock_client_cls:
        mock_client = AsyncMock()
        mock_client.post.side_effect = httpx.ReadTimeout("slow")
        mock_client.__aenter__ = AsyncMock(return_value=mock_client)
        mock_client.__aexit__ = AsyncMock(return_value=False)
        mock_client_cls.return_value = mock_client

        result = await b.forward({"model": "m", "messages": []})

    assert not result.ok
    assert result.status_code == 504


# ---------------------------------------------------------------------------
# create_backend
# ---------------------------------------------------------------------------

def test_create_backend_wraps_with_retry():
    backend = create_backend({"provider": "openai_compat", "url": "http://x/v1", "max_retries": 3})
    assert isinstance(backend, RetryableBackendWrapper)
    assert isinstance(backend.backend, OpenAICompatibleBackend)
    assert backend.max_retries == 3


def test_create_backend_rejects_bad_config():
    with pytest.raises(ValueError):
        create_backend({"provider": "carrier-pigeon"})
    with pytest.raises(ValueError):
        create_backend({"provider": "openai_compat"})


# ---------------------------------------------------------------------------
# RetryableBackendWrapper
# ---------------------------------------------------------------------------

class FlakyBackend:
    """Scripted inner backend for the retry wrapper."""

    name = "flaky"
    url = "http://flaky"
    timeout = 5

    def __init__(self, responses=None, stream_failures=0, fail_mid_stream=False):
        self.responses = list(responses or [])
        self.forward_calls = 0
        self.stream_calls = 0
        self.stream_failures = stream_failures
        self.fail_mid_stream = fail_mid_stream

    async def forward(self, body):
        self.forward_calls += 1
        return self.responses.pop(0)

    async def forward_stream(self, body):
        self.stream_calls += 1
        if self.stream_calls <= self.stream_failures:
            raise httpx.ConnectError("refused")
        yield "data: first"
        if self.fail_mid_stream:
            raise httpx.ReadError("reset")
        yield "data: [DONE]"

    async def health_check(self):
        return True


@pytest.fixture
def no_sleep():
    with patch("switchboard.backends.retry_wrapper.asyncio.sleep", new=AsyncMock()) as sleep:
        yield sleep


@pytest.mark.asyncio
async def test_retry_on_transient_status(no_sleep):
    inner = FlakyBackend([
        BackendResponse(ok=False, status_code=503, error="busy"),
        BackendResponse(ok=True, data={"choices": [{"message": {"content": "ok"}}]}),
    ])
    wrapper = RetryableBackendWrapper(inner, max_retries=2)

    result = await wrapper.forward({"model": "m"})

    assert result.ok
    assert inner.forward_calls == 2
    no_sleep.assert_awaited_once_with(1.5)


@pytest.mark.asyncio
async def test_no_retry_on_permanent_status(no_sleep):
    inner = FlakyBackend([BackendResponse(ok=False, status_code=401, error="bad key")])
    result = await RetryableBackendWrapper(inner, max_retries=3).forward({})
    assert result.status_code == 401
    assert inner.forward_calls == 1
    no_sleep.assert_not_awaited()


@pytest.mark.asyncio
async def test_retries_exhausted_returns_last_response(no_sleep):
    inner = FlakyBackend([BackendResponse(ok=False, status_code=429, error="slow down")] * 2)
    result = await RetryableBackendWrapper(inner, max_retries=1).forward({})
    assert result.status_code == 429
    assert inner.forward_calls == 2


def test_backoff_is_capped():
    wrapper = RetryableBackendWrapper(FlakyBackend(), backoff_base=2, backoff_max=5)
    assert wrapper._backoff_seconds(1) == 2
    assert wrapper._backoff_seconds(4) == 5


@pytest.mark.asyncio
async def test_stream_retries_before_first_line(no_sleep):
    inner = FlakyBackend(stream_failures=1)
    wrapper = RetryableBackendWrapper(inner, max_retries=1)
    lines = [line async for line in wrapper.forward_stream({})]
    assert lines == ["data: first", "data: [DONE]"]
    assert inner.stream_calls == 2


@pytest.mark.asyncio
async def test_stream_never_retries_mid_stream(no_sleep):
    inner = FlakyBackend(fail_mid_stream=True)
    wrapper = RetryableBackendWrapper(inner, max_retries=3)
    lines = []
    with pytest.raises(TransportError):
        async for line in wrapper.forward_stream({}):
            lines.append(line)
    assert lines == ["data: first"]
    assert inner.stream_calls == 1


# ---------------------------------------------------------------------------
# Stream accumulation
# ---------------------------------------------------------------------------

def test_parse_sse_line():
    assert parse_sse_line(": keep-alive") is None
    assert parse_sse_line("event: x") is None
    assert parse_sse_line("data: [DONE]") == "[DONE]"
    assert parse_sse_line("data: {broken") is None
    assert parse_sse_line('data: {"a": 1}') == {"a": 1}


def test_accumulator_stitches_tool_call_fragments():
    """Fragments are merged by index; arguments concatenate in order."""
    acc = StreamAccumulator()
    acc.feed('data: {"choices": [{"delta": {"tool_calls": [{"index": 1, "id": "b", "function": {"name": "second", "arguments": "{}"}}]}}]}')
    acc.feed('data: {"choices": [{"delta": {"tool_calls": [{"index": 0, "id": "a", "function": {"name": "first", "arguments": "{\\"x\\""}}]}}]}')
    acc.feed('data: {"choices": [{"delta": {"tool_calls": [{"index": 0, "function": {"arguments": ": 1}"}}]}}]}')
    acc.feed('data: {"choices": [{"delta": {}, "finish_reason": "tool_calls"}]}')
    acc.feed("data: [DONE]")

    assert acc.done
    assert acc.finish_reason == "tool_calls"
    assert [(c.id, c.name, c.arguments) for c in acc.tool_calls] == [
        ("a", "first", '{"x": 1}'),
        ("b", "second", "{}"),
    ]


def test_accumulator_text_and_reasoning():
    acc = StreamAccumulator()
    delta = acc.feed('data: {"choices": [{"delta": {"reasoning_content": "hmm", "content": "Hi"}}]}')
    assert delta.reasoning == "hmm"
    assert delta.content == "Hi"
    assert acc.feed('data: {"choices": [{"delta": {"role": "assistant"}}]}') is None
    assert acc.content == "Hi"
    assert acc.tool_calls == []


def test_accumulator_error_chunk_raises():
    acc = StreamAccumulator()
    with pytest.raises(ProtocolError):
        acc.feed('data: {"error": {"message": "overloaded"}}')
