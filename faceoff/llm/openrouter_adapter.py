"""OpenRouter adapter implementation.

Streaming completions are read straight off the HTTP response with httpx
and decoded from the server-sent events format; non-streaming completions
go through the OpenAI SDK, since OpenRouter exposes an OpenAI-compatible API.
"""

import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager
from typing import List, Dict, Any, AsyncIterator, Optional

import httpx
from openai import AsyncOpenAI, APIError, APIStatusError

from .base_adapter import (
    LLMAdapter,
    StreamChunk,
    PartialChunk,
    TerminalChunk,
    CompletionResult,
    Usage,
)
from ..config.settings import settings
from ..errors import DecodeError, UpstreamError


logger = logging.getLogger(__name__)

EVENT_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"


class SSELineBuffer:
    """Splits incrementally received text into event payloads.

    Text may arrive cut at any position; the trailing partial line is kept
    until the next read completes it.
    """

    def __init__(self, prefix: str = EVENT_PREFIX) -> None:
        self._prefix = prefix
        self._buffer = ""

    def feed(self, text: str) -> List[str]:
        """Add received text and return the payloads of all completed lines."""
        self._buffer += text
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return self._payloads(lines)

    def flush(self) -> List[str]:
        """Return the payload of a final unterminated line, if any."""
        remainder, self._buffer = self._buffer, ""
        return self._payloads([remainder])

    def _payloads(self, lines: List[str]) -> List[str]:
        payloads = []
        for line in lines:
            stripped = line.strip()
            # Blank lines separate events, ":" lines are keep-alive comments
            if stripped.startswith(self._prefix):
                payloads.append(stripped[len(self._prefix):])
        return payloads


def parse_payload(payload: str) -> Dict[str, Any]:
    """Parse one event payload.

    Raises:
        DecodeError: If the payload is not a JSON object
    """
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        raise DecodeError(payload, str(e)) from e
    if not isinstance(data, dict):
        raise DecodeError(payload, "not an object")
    return data


def _error_status(code: Any) -> int:
    """HTTP-like status of an in-stream error; symbolic codes map to 500."""
    try:
        return int(code or 500)
    except (TypeError, ValueError):
        return 500


def _delta_content(data: Dict[str, Any]) -> str:
    """Content fragment of a chunk payload.

    Raises:
        DecodeError: If choices, delta or content have the wrong type
    """
    choices = data.get("choices")
    if choices is None:
        return ""
    if not isinstance(choices, list):
        raise DecodeError(json.dumps(data), "choices is not a list")
    if not choices:
        return ""
    choice = choices[0]
    if not isinstance(choice, dict):
        raise DecodeError(json.dumps(data), "choice is not an object")
    delta = choice.get("delta")
    if delta is None:
        return ""
    if not isinstance(delta, dict):
        raise DecodeError(json.dumps(data), "delta is not an object")
    content = delta.get("content")
    if content is None:
        return ""
    if not isinstance(content, str):
        raise DecodeError(json.dumps(data), "content is not a string")
    return content


class _StreamState:
    """Aggregates content and usage while a stream is decoded."""

    def __init__(self) -> None:
        self.parts: List[str] = []
        self.usage: Optional[Usage] = None

    def apply(self, data: Dict[str, Any]) -> str:
        """Fold one decoded payload in and return its content fragment.

        Raises:
            UpstreamError: If the payload reports a provider failure
            DecodeError: If the payload does not have the chunk shape;
                the state is left untouched
        """
        error = data.get("error")
        if error:
            # Provider failures after the 200 status arrive as an event
            if isinstance(error, dict):
                raise UpstreamError(_error_status(error.get("code")), str(error.get("message", "")))
            raise UpstreamError(500, str(error))

        usage = data.get("usage")
        if usage is not None and not isinstance(usage, dict):
            raise DecodeError(json.dumps(data), "usage is not an object")
        fragment = _delta_content(data)
        parsed_usage = None
        if usage:
            try:
                parsed_usage = Usage.from_api(usage)
            except (TypeError, ValueError) as e:
                raise DecodeError(json.dumps(data), f"bad usage: {e}") from e

        if parsed_usage is not None:
            self.usage = parsed_usage
        if fragment:
            self.parts.append(fragment)
        return fragment

    @property
    def full_content(self) -> str:
        return "".join(self.parts)


class OpenRouterAdapter(LLMAdapter):
    """Adapter for OpenRouter models.

    This adapter is stateless - it receives a prompt and returns a response.
    It does not maintain conversation history or perform any retrieval.

    The API key is optional: without it only free models can be used.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """Initialize the OpenRouter adapter.

        Args:
            api_key: OpenRouter API key, None for free mode
            base_url: API base URL, defaults to settings
            transport: Optional httpx transport (used by tests)
        """
        self._api_key = api_key or None
        self._base_url = (base_url or settings.openrouter_base_url).rstrip("/")
        self._transport = transport
        self._openai_client: Optional[AsyncOpenAI] = None

    @property
    def provider(self) -> str:
        """Get the provider name."""
        return "openrouter"

    @property
    def has_api_key(self) -> bool:
        return self._api_key is not None

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "HTTP-Referer": settings.http_referer,
            "X-Title": settings.app_title,
        }
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    @asynccontextmanager
    async def _http_client(self) -> AsyncIterator[httpx.AsyncClient]:
        # Streams never time out on read; stalled streams rely on the transport
        timeout = httpx.Timeout(settings.connect_timeout, read=None)
        async with httpx.AsyncClient(
            base_url=self._base_url,
            transport=self._transport,
            timeout=timeout,
        ) as client:
            yield client

    async def stream(
        self,
        model_id: str,
        messages: List[Dict[str, Any]],
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[StreamChunk]:
        """Stream a completion from OpenRouter.

        Args:
            model_id: OpenRouter model ID
            messages: List of message dicts with 'role' and 'content' keys
            cancel_event: Set to stop reading; no TerminalChunk follows

        Yields:
            PartialChunk per content fragment, then one TerminalChunk

        Raises:
            UpstreamError: If the response status is not a success
        """
        start = time.monotonic()
        body = {
            "model": model_id,
            "messages": messages,
            "stream": True,
            # Ask OpenRouter for actual usage/cost data
            "usage": {"include": True},
        }

        def cancelled() -> bool:
            return cancel_event is not None and cancel_event.is_set()

        def terminal() -> TerminalChunk:
            return TerminalChunk(
                full_content=state.full_content,
                latency_ms=int((time.monotonic() - start) * 1000),
                usage=state.usage,
            )

        state = _StreamState()
        lines = SSELineBuffer()

        async with self._http_client() as client:
            async with client.stream(
                "POST", "/chat/completions", json=body, headers=self._headers()
            ) as response:
                if not response.is_success:
                    error_body = (await response.aread()).decode("utf-8", errors="replace")
                    raise UpstreamError(response.status_code, error_body)

                async for text in response.aiter_text():
                    if cancelled():
                        return
                    for payload in lines.feed(text):
                        if payload == DONE_SENTINEL:
                            yield terminal()
                            return
                        try:
                            fragment = state.apply(parse_payload(payload))
                        except DecodeError as e:
                            logger.debug("Skipping payload for %s: %s", model_id, e)
                            continue
                        if fragment:
                            yield PartialChunk(content=fragment)
                        if cancelled():
                            return

                for payload in lines.flush():
                    if payload == DONE_SENTINEL:
                        break
                    try:
                        fragment = state.apply(parse_payload(payload))
                    except DecodeError as e:
                        logger.debug("Skipping payload for %s: %s", model_id, e)
                        continue
                    if fragment:
                        yield PartialChunk(content=fragment)

        if not cancelled():
            yield terminal()

    def _get_openai_client(self) -> AsyncOpenAI:
        if self._openai_client is None:
            self._openai_client = AsyncOpenAI(
                # The SDK insists on a key; OpenRouter accepts free models without one
                api_key=self._api_key or "",
                base_url=self._base_url,
                default_headers={
                    "HTTP-Referer": settings.http_referer,
                    "X-Title": settings.app_title,
                },
                http_client=(
                    httpx.AsyncClient(transport=self._transport)
                    if self._transport is not None
                    else None
                ),
            )
        return self._openai_client

    async def complete(
        self,
        model_id: str,
        messages: List[Dict[str, Any]],
        system: str = "",
        max_tokens: int = 4096,
    ) -> CompletionResult:
        """Get a complete response from OpenRouter.

        Args:
            model_id: OpenRouter model ID
            messages: List of message dicts with 'role' and 'content' keys
            system: System prompt
            max_tokens: Maximum tokens to generate

        Returns:
            CompletionResult with content, usage and latency

        Raises:
            UpstreamError: If the API call fails
        """
        api_messages = []
        if system:
            api_messages.append({"role": "system", "content": system})
        api_messages.extend(messages)

        start = time.monotonic()
        try:
            response = await self._get_openai_client().chat.completions.create(
                model=model_id,
                messages=api_messages,
                max_tokens=max_tokens,
                extra_body={"usage": {"include": True}},
            )
        except APIStatusError as e:
            raise UpstreamError(e.status_code, e.message) from e
        except APIError as e:
            raise UpstreamError(500, str(e)) from e

        latency_ms = int((time.monotonic() - start) * 1000)
        content = ""
        if response.choices:
            content = response.choices[0].message.content or ""
        usage = Usage.from_api(response.usage.model_dump()) if response.usage else None

        return CompletionResult(
            content=content,
            model=model_id,
            latency_ms=latency_ms,
            usage=usage,
        )

    async def aclose(self) -> None:
        """Close the underlying SDK client."""
        if self._openai_client is not None:
            await self._openai_client.close()
            self._openai_client = None
