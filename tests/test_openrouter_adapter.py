"""Tests for the OpenRouter adapter: SSE decoding and completions."""

import asyncio
import json

import httpx
import pytest

from faceoff.errors import DecodeError, UpstreamError
from faceoff.llm.base_adapter import PartialChunk, TerminalChunk
from faceoff.llm.openrouter_adapter import OpenRouterAdapter, SSELineBuffer, parse_payload

from conftest import sse


def delta(text: str) -> str:
    return json.dumps({"choices": [{"delta": {"content": text}}]})


USAGE = json.dumps({
    "choices": [],
    "usage": {"prompt_tokens": 10, "completion_tokens": 2, "total_tokens": 12, "cost": 0.00002},
})


def make_adapter(handler, api_key="sk-or-test"):
    return OpenRouterAdapter(api_key=api_key, transport=httpx.MockTransport(handler))


async def collect(adapter, model_id="acme/model-x", cancel_event=None):
    chunks = []
    async for chunk in adapter.stream(model_id, [{"role": "user", "content": "Hi"}], cancel_event):
        chunks.append(chunk)
    return chunks


# =============================================================================
# Line buffer
# =============================================================================


def test_line_buffer_keeps_partial_line_until_completed():
    buffer = SSELineBuffer()
    assert buffer.feed('data: {"a"') == []
    assert buffer.feed(': 1}\n\ndata: [DO') == ['{"a": 1}']
    assert buffer.feed("NE]\n") == ["[DONE]"]


def test_line_buffer_ignores_comments_and_blank_lines():
    buffer = SSELineBuffer()
    payloads = buffer.feed(": OPENROUTER PROCESSING\n\n\ndata: x\n")
    assert payloads == ["x"]


def test_line_buffer_flush_returns_unterminated_line():
    buffer = SSELineBuffer()
    assert buffer.feed("data: tail") == []
    assert buffer.flush() == ["tail"]
    assert buffer.flush() == []


def test_parse_payload_rejects_non_objects():
    assert parse_payload('{"ok": true}') == {"ok": True}
    with pytest.raises(DecodeError):
        parse_payload("{broken")
    with pytest.raises(DecodeError):
        parse_payload("[1, 2]")


# =============================================================================
# Streaming
# =============================================================================


@pytest.mark.asyncio
async def test_stream_yields_partials_then_terminal_with_usage():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, content=sse(delta("Hel"), delta("lo"), USAGE, "[DONE]"))

    chunks = await collect(make_adapter(handler))

    assert chunks[:2] == [PartialChunk(content="Hel"), PartialChunk(content="lo")]
    terminal = chunks[-1]
    assert isinstance(terminal, TerminalChunk)
    assert len(chunks) == 3
    assert terminal.full_content == "Hello"
    assert terminal.usage.prompt_tokens == 10
    assert terminal.usage.completion_tokens == 2
    assert terminal.usage.cost == pytest.approx(0.00002)
    assert terminal.latency_ms >= 0

    request = requests[0]
    assert request.url.path == "/api/v1/chat/completions"
    assert request.headers["Authorization"] == "Bearer sk-or-test"
    body = json.loads(request.content)
    assert body["stream"] is True
    assert body["usage"] == {"include": True}
    assert body["model"] == "acme/model-x"


@pytest.mark.asyncio
async def test_stream_reassembles_lines_split_across_reads():
    raw = sse(delta("Hello"), delta(" world"), "[DONE]")

    async def pieces():
        for start in range(0, len(raw), 7):
            yield raw[start:start + 7]

    def handler(request):
        return httpx.Response(200, content=pieces())

    chunks = await collect(make_adapter(handler))

    assert [c.content for c in chunks if isinstance(c, PartialChunk)] == ["Hello", " world"]
    assert chunks[-1].full_content == "Hello world"


@pytest.mark.asyncio
async def test_stream_skips_malformed_payload():
    def handler(request):
        return httpx.Response(200, content=sse(delta("A"), "{not json", delta("B"), "[DONE]"))

    chunks = await collect(make_adapter(handler))

    assert [c.content for c in chunks if isinstance(c, PartialChunk)] == ["A", "B"]
    assert isinstance(chunks[-1], TerminalChunk)
    assert chunks[-1].full_content == "AB"


@pytest.mark.asyncio
@pytest.mark.parametrize("bad", [
    {"choices": [None]},
    {"choices": "oops"},
    {"choices": [{"delta": "text"}]},
    {"choices": [{"delta": {"content": 42}}]},
    {"choices": [], "usage": [1, 2]},
    {"choices": [], "usage": {"prompt_tokens": "many"}},
])
async def test_stream_skips_payload_with_wrong_shape(bad):
    def handler(request):
        return httpx.Response(
            200, content=sse(delta("A"), json.dumps(bad), delta("B"), USAGE, "[DONE]")
        )

    chunks = await collect(make_adapter(handler))

    assert [c.content for c in chunks if isinstance(c, PartialChunk)] == ["A", "B"]
    assert isinstance(chunks[-1], TerminalChunk)
    assert chunks[-1].full_content == "AB"
    assert chunks[-1].usage.total_tokens == 12


@pytest.mark.asyncio
async def test_stream_without_done_sentinel_still_terminates():
    def handler(request):
        return httpx.Response(200, content=sse(delta("only")))

    chunks = await collect(make_adapter(handler))

    assert isinstance(chunks[-1], TerminalChunk)
    assert chunks[-1].full_content == "only"
    assert chunks[-1].usage is None


@pytest.mark.asyncio
async def test_stream_error_status_raises_before_any_chunk():
    def handler(request):
        return httpx.Response(401, json={"error": {"message": "No auth credentials found"}})

    chunks = []
    with pytest.raises(UpstreamError) as excinfo:
        async for chunk in make_adapter(handler).stream("acme/model-x", []):
            chunks.append(chunk)

    assert chunks == []
    assert excinfo.value.status == 401
    assert "No auth credentials found" in str(excinfo.value)
    assert str(excinfo.value).startswith("API error: 401 - ")


@pytest.mark.asyncio
async def test_stream_error_payload_raises_upstream_error():
    error = json.dumps({"error": {"code": 502, "message": "Provider returned error"}})

    def handler(request):
        return httpx.Response(200, content=sse(delta("par"), error))

    with pytest.raises(UpstreamError) as excinfo:
        await collect(make_adapter(handler))
    assert excinfo.value.status == 502


@pytest.mark.asyncio
async def test_stream_error_payload_with_symbolic_code_keeps_message():
    error = json.dumps({"error": {"code": "rate_limited", "message": "Slow down"}})

    def handler(request):
        return httpx.Response(200, content=sse(delta("par"), error))

    with pytest.raises(UpstreamError) as excinfo:
        await collect(make_adapter(handler))
    assert excinfo.value.status == 500
    assert "Slow down" in str(excinfo.value)


@pytest.mark.asyncio
async def test_stream_stops_without_terminal_when_cancelled():
    def handler(request):
        return httpx.Response(200, content=sse(delta("one"), delta("two"), "[DONE]"))

    cancel = asyncio.Event()
    chunks = []
    async for chunk in make_adapter(handler).stream("acme/model-x", [], cancel):
        chunks.append(chunk)
        cancel.set()

    assert chunks == [PartialChunk(content="one")]


@pytest.mark.asyncio
async def test_free_mode_sends_no_authorization_header():
    seen = []

    def handler(request):
        seen.append(request.headers)
        return httpx.Response(200, content=sse("[DONE]"))

    chunks = await collect(make_adapter(handler, api_key=None), model_id="acme/tiny:free")

    assert "Authorization" not in seen[0]
    assert seen[0]["X-Title"]
    assert chunks == [TerminalChunk(full_content="", latency_ms=chunks[0].latency_ms)]


# =============================================================================
# Completion
# =============================================================================


@pytest.mark.asyncio
async def test_complete_sends_system_prompt_and_parses_response():
    captured = []

    def handler(request):
        captured.append(json.loads(request.content))
        return httpx.Response(200, json={
            "id": "gen-1",
            "object": "chat.completion",
            "created": 0,
            "model": "acme/tiny:free",
            "choices": [{
                "index": 0,
                "finish_reason": "stop",
                "message": {"role": "assistant", "content": "Quick Greeting"},
            }],
            "usage": {"prompt_tokens": 30, "completion_tokens": 3, "total_tokens": 33},
        })

    adapter = make_adapter(handler)
    result = await adapter.complete(
        "acme/tiny:free",
        [{"role": "user", "content": "Hello"}],
        system="Make a title",
        max_tokens=16,
    )
    await adapter.aclose()

    assert result.content == "Quick Greeting"
    assert result.usage.total_tokens == 33
    body = captured[0]
    assert body["messages"][0] == {"role": "system", "content": "Make a title"}
    assert body["max_tokens"] == 16
    assert body["usage"] == {"include": True}


@pytest.mark.asyncio
async def test_complete_maps_api_errors_to_upstream_error():
    def handler(request):
        return httpx.Response(400, json={"error": {"message": "bad model"}})

    adapter = make_adapter(handler)
    with pytest.raises(UpstreamError) as excinfo:
        await adapter.complete("acme/missing", [{"role": "user", "content": "x"}])
    assert excinfo.value.status == 400
