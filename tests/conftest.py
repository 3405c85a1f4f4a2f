"""Shared fixtures and fakes for the Faceoff test suite."""

import asyncio
import os
import tempfile
from typing import Any, Dict, List, Optional

# Keep settings, logs and preferences out of the real home directory
os.environ.setdefault("FACEOFF_HOME", tempfile.mkdtemp(prefix="faceoff-tests-"))
os.environ.pop("OPENROUTER_API_KEY", None)

import pytest

from faceoff.config.models import ModelInfo
from faceoff.llm.base_adapter import (
    CompletionResult,
    LLMAdapter,
    PartialChunk,
    TerminalChunk,
    Usage,
)
from faceoff.storage.conversation_store import ConversationStore


class Gate:
    """Scripted stream step that blocks until released."""

    def __init__(self) -> None:
        self.reached = asyncio.Event()
        self.released = asyncio.Event()

    def release(self) -> None:
        self.released.set()


class FakeAdapter(LLMAdapter):
    """Adapter replaying a script of chunks per model.

    Script items are StreamChunks, Exceptions (raised) or Gates (awaited).
    """

    def __init__(
        self,
        scripts: Optional[Dict[str, List[Any]]] = None,
        title: str = "Greeting Exchange",
        complete_error: Optional[Exception] = None,
    ) -> None:
        self.scripts = scripts or {}
        self.title = title
        self.complete_error = complete_error
        self.stream_calls: List[Dict[str, Any]] = []
        self.complete_calls: List[Dict[str, Any]] = []
        self.closed = 0

    @property
    def provider(self) -> str:
        return "fake"

    @property
    def has_api_key(self) -> bool:
        return True

    async def stream(self, model_id, messages, cancel_event=None):
        self.stream_calls.append({"model_id": model_id, "messages": list(messages)})
        for item in self.scripts.get(model_id, []):
            if isinstance(item, Gate):
                item.reached.set()
                await item.released.wait()
            elif isinstance(item, Exception):
                raise item
            else:
                yield item

    async def complete(self, model_id, messages, system="", max_tokens=4096):
        self.complete_calls.append(
            {"model_id": model_id, "messages": list(messages), "system": system}
        )
        if self.complete_error is not None:
            raise self.complete_error
        return CompletionResult(content=self.title, model=model_id)

    async def aclose(self) -> None:
        self.closed += 1


def reply(text: str, prompt_tokens: int = 10, cost: Optional[float] = None) -> List[Any]:
    """Script of a successful reply streamed word by word."""
    words = text.split(" ")
    parts = [w if i == 0 else " " + w for i, w in enumerate(words)]
    usage = Usage(
        prompt_tokens=prompt_tokens,
        completion_tokens=len(words),
        total_tokens=prompt_tokens + len(words),
        cost=cost,
    )
    return [PartialChunk(content=p) for p in parts] + [
        TerminalChunk(full_content=text, latency_ms=120, usage=usage)
    ]


def sse(*payloads: str) -> bytes:
    """Encode payloads as server-sent events."""
    return "".join(f"data: {p}\n\n" for p in payloads).encode("utf-8")


@pytest.fixture
def store(tmp_path):
    return ConversationStore(tmp_path / "faceoff.db")


@pytest.fixture
def paid_model():
    return ModelInfo(
        model_id="acme/model-x",
        display_name="Model X",
        prompt_price=1.0,
        completion_price=2.0,
    )
