"""Base adapter interface and stream data types for LLM providers."""

from abc import ABC, abstractmethod
import asyncio
from typing import List, Dict, Any, AsyncIterator, Optional, Union
from dataclasses import dataclass


@dataclass
class Usage:
    """Token usage reported for one completion."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    # Native token counts (used by the provider for actual billing)
    native_tokens_prompt: Optional[int] = None
    native_tokens_completion: Optional[int] = None
    native_tokens_reasoning: Optional[int] = None
    # Authoritative cost in USD, when the provider reports it
    cost: Optional[float] = None
    # True when the counts were estimated locally
    estimated: bool = False

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Usage":
        """Build from a provider `usage` object."""
        prompt = int(data.get("prompt_tokens") or 0)
        completion = int(data.get("completion_tokens") or 0)
        cost = data.get("cost")
        return cls(
            prompt_tokens=prompt,
            completion_tokens=completion,
            total_tokens=int(data.get("total_tokens") or prompt + completion),
            native_tokens_prompt=data.get("native_tokens_prompt"),
            native_tokens_completion=data.get("native_tokens_completion"),
            native_tokens_reasoning=data.get("native_tokens_reasoning"),
            cost=float(cost) if cost is not None else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }
        for key in (
            "native_tokens_prompt",
            "native_tokens_completion",
            "native_tokens_reasoning",
            "cost",
        ):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        if self.estimated:
            data["estimated"] = True
        return data


@dataclass
class PartialChunk:
    """A content fragment, in receipt order."""

    content: str


@dataclass
class TerminalChunk:
    """Successful end of a stream with the aggregated result."""

    full_content: str
    latency_ms: int
    usage: Optional[Usage] = None


@dataclass
class ErrorChunk:
    """A stream failed."""

    message: str


StreamChunk = Union[PartialChunk, TerminalChunk, ErrorChunk]


@dataclass
class ChunkEvent:
    """One addressed event delivered from a running stream to its listeners."""

    stream_id: str
    content: str = ""
    done: bool = False
    usage: Optional[Usage] = None
    latency_ms: Optional[int] = None
    full_content: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.done and self.error is None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    @classmethod
    def from_chunk(cls, stream_id: str, chunk: StreamChunk) -> "ChunkEvent":
        if isinstance(chunk, PartialChunk):
            return cls(stream_id=stream_id, content=chunk.content)
        if isinstance(chunk, TerminalChunk):
            return cls(
                stream_id=stream_id,
                done=True,
                usage=chunk.usage,
                latency_ms=chunk.latency_ms,
                full_content=chunk.full_content,
            )
        return cls(stream_id=stream_id, done=True, error=chunk.message)


@dataclass
class CompletionResult:
    """Result of a non-streaming completion."""

    content: str
    model: str
    latency_ms: int = 0
    usage: Optional[Usage] = None


@dataclass
class ChatMessage:
    """A message in a panel's history."""

    role: str  # "system", "user" or "assistant"
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


def to_api_messages(messages: List[Union[ChatMessage, Dict[str, Any]]]) -> List[Dict[str, Any]]:
    """Normalize a message list to provider dicts."""
    return [m.to_dict() if isinstance(m, ChatMessage) else dict(m) for m in messages]


class LLMAdapter(ABC):
    """Abstract base class for LLM adapters.

    LLM adapters are stateless - they receive a prompt and return a response.
    They do not maintain conversation history or track streams; the model
    is chosen per call so one adapter serves every panel.
    """

    @abstractmethod
    def stream(
        self,
        model_id: str,
        messages: List[Dict[str, Any]],
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[StreamChunk]:
        """Stream a response from the LLM.

        Args:
            model_id: Provider model identifier
            messages: List of message dicts with 'role' and 'content' keys
            cancel_event: Set to stop reading the response

        Yields:
            PartialChunk objects, then one TerminalChunk
        """

    @abstractmethod
    async def complete(
        self,
        model_id: str,
        messages: List[Dict[str, Any]],
        system: str = "",
        max_tokens: int = 4096,
    ) -> CompletionResult:
        """Get a complete response from the LLM (non-streaming)."""

    @property
    @abstractmethod
    def provider(self) -> str:
        """Get the provider name."""

    @property
    @abstractmethod
    def has_api_key(self) -> bool:
        """Whether the adapter sends a credential."""
