"""Stream registry: one cancellable background task per in-flight stream.

The registry owns the only state shared between streams, a map from stream
id to its handle. Entries are inserted by `start` and removed when the
stream delivers its terminal/error event or is stopped; nothing else reads
and then writes the map, so no locking is needed on the event loop.
"""

import asyncio
import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from ..config.models import ModelCatalog, is_free_model_id
from ..errors import CredentialError, RestrictionError, ValidationError
from ..llm.base_adapter import (
    ChunkEvent,
    LLMAdapter,
    PartialChunk,
    TerminalChunk,
)
from ..llm.openrouter_adapter import OpenRouterAdapter
from ..utils.token_counter import create_counter
from .chunk_channel import ChunkChannel


logger = logging.getLogger(__name__)

AdapterFactory = Callable[[Optional[str]], LLMAdapter]


class StreamState(Enum):
    """Lifecycle state of a stream."""

    ACTIVE = "active"
    CANCELLED = "cancelled"


@dataclass
class StreamHandle:
    """Cancellation handle for one in-flight stream."""

    stream_id: str
    model_id: str
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional[asyncio.Task] = None
    state: StreamState = StreamState.ACTIVE

    @property
    def cancelled(self) -> bool:
        return self.state is StreamState.CANCELLED

    def cancel(self) -> None:
        self.state = StreamState.CANCELLED
        self.cancel_event.set()
        if self.task is not None and not self.task.done():
            self.task.cancel()


class StreamRegistry:
    """Starts, tracks and stops completion streams.

    Each accepted stream runs as its own asyncio task that drives the
    adapter's decoder and publishes chunk events on the channel. Once a
    stream is stopped no further events are published for it, even if its
    terminal chunk was already decoded: cancellation always wins.
    """

    def __init__(
        self,
        channel: ChunkChannel,
        api_key_provider: Callable[[], Optional[str]],
        catalog: Optional[ModelCatalog] = None,
        adapter_factory: Optional[AdapterFactory] = None,
        allow_free_mode: bool = True,
    ) -> None:
        """Initialize the registry.

        Args:
            channel: Where chunk events are published
            api_key_provider: Returns the current API key or None
            catalog: Model catalog used to recognise zero-priced models
            adapter_factory: Builds an adapter for an API key
            allow_free_mode: Permit streams without an API key
        """
        self._channel = channel
        self._api_key_provider = api_key_provider
        self._catalog = catalog
        self._adapter_factory = adapter_factory or (lambda key: OpenRouterAdapter(api_key=key))
        self._allow_free_mode = allow_free_mode
        self._handles: Dict[str, StreamHandle] = {}
        self._tasks: Set[asyncio.Task] = set()

    @property
    def active_ids(self) -> List[str]:
        return list(self._handles)

    def is_active(self, stream_id: str) -> bool:
        return stream_id in self._handles

    def _is_free(self, model_id: str) -> bool:
        if self._catalog is not None:
            return self._catalog.is_free(model_id)
        return is_free_model_id(model_id)

    def check_credentials(self, model_id: str) -> Optional[str]:
        """Apply the credential policy for a model.

        Returns:
            The API key to use, None in free mode

        Raises:
            CredentialError: If no key is set and free mode is disabled
            RestrictionError: If no key is set and the model is not free
        """
        api_key = self._api_key_provider()
        if api_key:
            return api_key
        if not self._allow_free_mode:
            raise CredentialError("openrouter")
        if not self._is_free(model_id):
            raise RestrictionError(model_id)
        return None

    def start(self, stream_id: str, model_id: str, messages: List[Dict[str, Any]]) -> None:
        """Start streaming a completion in the background.

        Returns as soon as the stream is accepted; chunks arrive on the
        channel. Must be called from a running event loop.

        Args:
            stream_id: Correlation id carried by every event of this stream
            model_id: Model to query
            messages: Full message history to send

        Raises:
            ValidationError: If the stream id is already in flight
            CredentialError: If a required credential is missing
            RestrictionError: If free mode targets a paid model
        """
        if stream_id in self._handles:
            raise ValidationError(f"Stream {stream_id} is already active")

        api_key = self.check_credentials(model_id)
        adapter = self._adapter_factory(api_key)

        handle = StreamHandle(stream_id=stream_id, model_id=model_id)
        task = asyncio.get_running_loop().create_task(
            self._run(handle, adapter, [dict(m) for m in messages]),
            name=f"stream:{stream_id}",
        )
        handle.task = task
        self._handles[stream_id] = handle
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

        logger.info("Started stream %s for %s", stream_id, model_id)

    def stop(self, stream_id: str) -> None:
        """Cancel a stream. Unknown or finished ids are ignored."""
        handle = self._handles.pop(stream_id, None)
        if handle is None:
            return
        handle.cancel()
        logger.info("Stopped stream %s", stream_id)

    def stop_all(self) -> None:
        for stream_id in list(self._handles):
            self.stop(stream_id)

    async def join(self, timeout: Optional[float] = None) -> None:
        """Wait for every running stream to finish on its own."""
        if self._tasks:
            await asyncio.wait(set(self._tasks), timeout=timeout)

    async def aclose(self, timeout: Optional[float] = None) -> None:
        """Stop every stream and wait for the tasks to wind down.

        Args:
            timeout: Maximum time to wait for cancellation
        """
        self.stop_all()
        if self._tasks:
            await asyncio.wait(set(self._tasks), timeout=timeout)

    def _discard(self, handle: StreamHandle) -> None:
        if self._handles.get(handle.stream_id) is handle:
            del self._handles[handle.stream_id]

    def _publish(self, handle: StreamHandle, event: ChunkEvent) -> None:
        if handle.cancelled:
            return
        self._channel.publish(event)

    async def _run(
        self,
        handle: StreamHandle,
        adapter: LLMAdapter,
        messages: List[Dict[str, Any]],
    ) -> None:
        parts: List[str] = []
        terminal: Optional[TerminalChunk] = None
        loop = asyncio.get_running_loop()
        started = loop.time()

        try:
            stream = adapter.stream(handle.model_id, messages, handle.cancel_event)
            async with aclosing(stream) as chunks:
                async for chunk in chunks:
                    if handle.cancelled:
                        return
                    if isinstance(chunk, PartialChunk):
                        parts.append(chunk.content)
                        self._publish(handle, ChunkEvent.from_chunk(handle.stream_id, chunk))
                    elif isinstance(chunk, TerminalChunk):
                        terminal = chunk
                        break

            if handle.cancelled:
                return

            if terminal is None:
                terminal = TerminalChunk(
                    full_content="".join(parts),
                    latency_ms=int((loop.time() - started) * 1000),
                )
            if terminal.usage is None:
                terminal.usage = create_counter(handle.model_id).estimate_usage(
                    messages, terminal.full_content
                )

            self._discard(handle)
            logger.info(
                "Stream %s completed in %d ms (%d tokens)",
                handle.stream_id,
                terminal.latency_ms,
                terminal.usage.total_tokens,
            )
            self._publish(handle, ChunkEvent.from_chunk(handle.stream_id, terminal))

        except asyncio.CancelledError:
            logger.debug("Stream %s task cancelled", handle.stream_id)
            raise
        except Exception as e:
            self._discard(handle)
            if handle.cancelled:
                return
            logger.warning("Stream %s for %s failed: %s", handle.stream_id, handle.model_id, e)
            self._publish(
                handle,
                ChunkEvent(stream_id=handle.stream_id, done=True, error=str(e)),
            )
        finally:
            self._discard(handle)

    def _on_task_done(self, task: asyncio.Task) -> None:
        """Forget a finished task and report anything unexpected."""
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Stream task %s crashed", task.get_name(), exc_info=exc)
