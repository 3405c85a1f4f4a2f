"""Storage module for persistence.

This module handles all durable data:
- Conversations with their ordered panel models
- User and per-panel assistant messages
- API call logs with tokens, latency and cost
- Model selection presets
"""

from dataclasses import dataclass, field
from typing import Optional, List
import time
import uuid


def now_ms() -> int:
    """Current time in epoch milliseconds."""
    return int(time.time() * 1000)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class ConversationRecord:
    """A stored comparison conversation."""

    id: str
    title: Optional[str]
    models: List[str]
    created_at: int
    updated_at: int

    @classmethod
    def create(cls, models: List[str], title: Optional[str] = None) -> "ConversationRecord":
        """Create a new conversation with generated ID.

        Args:
            models: Ordered model IDs of the dispatched panels
            title: Optional title

        Returns:
            New ConversationRecord instance
        """
        timestamp = now_ms()
        return cls(
            id=new_id(),
            title=title,
            models=list(models),
            created_at=timestamp,
            updated_at=timestamp,
        )


@dataclass
class MessageRecord:
    """A stored message.

    User messages are shared by every panel and have no panel index;
    assistant messages belong to exactly one panel.
    """

    id: str
    conversation_id: str
    role: str
    content: str
    model_id: Optional[str] = None
    panel_index: Optional[int] = None
    tokens_prompt: Optional[int] = None
    tokens_completion: Optional[int] = None
    latency_ms: Optional[int] = None
    cost: Optional[float] = None
    created_at: int = field(default_factory=now_ms)

    @classmethod
    def user(cls, conversation_id: str, content: str) -> "MessageRecord":
        return cls(id=new_id(), conversation_id=conversation_id, role="user", content=content)

    @classmethod
    def assistant(
        cls,
        conversation_id: str,
        content: str,
        model_id: str,
        panel_index: int,
        tokens_prompt: Optional[int] = None,
        tokens_completion: Optional[int] = None,
        latency_ms: Optional[int] = None,
        cost: Optional[float] = None,
    ) -> "MessageRecord":
        return cls(
            id=new_id(),
            conversation_id=conversation_id,
            role="assistant",
            content=content,
            model_id=model_id,
            panel_index=panel_index,
            tokens_prompt=tokens_prompt,
            tokens_completion=tokens_completion,
            latency_ms=latency_ms,
            cost=cost,
        )


@dataclass
class ApiLogRecord:
    """One logged API call."""

    id: str
    model_id: str
    latency_ms: int
    status: str  # "success", "error" or "cancelled"
    conversation_id: Optional[str] = None
    provider: Optional[str] = None
    request_tokens: Optional[int] = None
    response_tokens: Optional[int] = None
    total_tokens: Optional[int] = None
    cost: Optional[float] = None
    error_message: Optional[str] = None
    created_at: int = field(default_factory=now_ms)


@dataclass
class PresetRecord:
    """A named model selection, one entry per panel."""

    id: str
    name: str
    models: List[Optional[str]]
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)

    @classmethod
    def create(cls, name: str, models: List[Optional[str]]) -> "PresetRecord":
        return cls(id=new_id(), name=name, models=list(models))


@dataclass
class ApiStats:
    """Aggregate API call statistics."""

    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0
    avg_latency: Optional[float] = None


@dataclass
class ModelStats:
    """API call statistics for one model."""

    model_id: str
    call_count: int
    total_tokens: int = 0
    total_cost: float = 0.0
    avg_latency: Optional[float] = None
