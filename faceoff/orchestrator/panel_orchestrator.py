"""Panel orchestrator: fans one prompt out to every panel and merges the results.

The orchestrator owns all panel state. It starts one stream per panel with
a selected model, routes the chunk events of those streams back to their
panels through a stream id -> panel index table, and runs the completion
side effects (cost, API log, message persistence, title bookkeeping)
exactly once per stream.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Set

from ..config.models import ModelCatalog, provider_of
from ..config.persistence import PersistenceManager
from ..config.settings import settings
from ..errors import FaceoffError, PersistenceError, ValidationError
from ..llm.base_adapter import ChatMessage, ChunkEvent, LLMAdapter, Usage
from ..storage import ApiLogRecord, MessageRecord, PresetRecord, new_id
from ..storage.conversation_store import ConversationStore
from ..summarization.title_generator import TitleGenerator
from .chunk_channel import ChunkChannel
from .completion_reconciler import CompletionReconciler, compute_cost
from .conversation_replay import rebuild_panel_histories, restore_panel_models
from .stream_registry import StreamRegistry


logger = logging.getLogger(__name__)

PanelListener = Callable[[int], None]
NoticeListener = Callable[[str], None]
TitleListener = Callable[[str, str], None]


@dataclass
class PanelState:
    """State of one comparison panel."""

    index: int
    model_id: Optional[str] = None
    messages: List[ChatMessage] = field(default_factory=list)
    current_response: str = ""
    is_streaming: bool = False
    usage: Optional[Usage] = None
    latency_ms: Optional[int] = None
    cost: Optional[float] = None
    error: Optional[str] = None

    def reset_result(self) -> None:
        """Clear the outcome of the previous exchange."""
        self.current_response = ""
        self.usage = None
        self.latency_ms = None
        self.cost = None
        self.error = None

    def reset(self) -> None:
        """Clear history and results, keeping the model selection."""
        self.messages = []
        self.is_streaming = False
        self.reset_result()

    def history(self) -> List[Dict[str, str]]:
        return [m.to_dict() for m in self.messages]


class PanelOrchestrator:
    """Fan-out controller for the comparison panels.

    All methods run on the event loop thread. Network work happens in the
    stream registry's tasks; their events come back through the channel,
    which this class subscribes to twice: once for completion side effects
    and once for panel state. Both listeners go through the reconciler, so
    whichever sees a finished stream first does the side effects.
    """

    def __init__(
        self,
        store: ConversationStore,
        registry: StreamRegistry,
        channel: ChunkChannel,
        title_adapter_factory: Callable[[], LLMAdapter],
        catalog: Optional[ModelCatalog] = None,
        title_generator: Optional[TitleGenerator] = None,
        preferences: Optional[PersistenceManager] = None,
        panel_count: Optional[int] = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            store: Persistence gateway
            registry: Stream registry publishing on `channel`
            channel: Chunk event channel
            title_adapter_factory: Builds the adapter used for title generation
            catalog: Model catalog for prices
            title_generator: Title generator, defaults to the free title model
            preferences: Where the panel model selection is remembered
            panel_count: Number of panels
        """
        self._store = store
        self._registry = registry
        self._channel = channel
        self._title_adapter_factory = title_adapter_factory
        self._catalog = catalog
        self._title_generator = title_generator or TitleGenerator()
        self._preferences = preferences

        count = panel_count or settings.panel_count
        self._panels = [PanelState(index=i) for i in range(count)]
        self._conversation_id: Optional[str] = None
        self._conversation_title: Optional[str] = None

        # Addressed routing table for chunk events
        self._stream_panels: Dict[str, int] = {}
        self._stream_models: Dict[str, str] = {}
        self._stream_counter = 0

        self._reconciler = CompletionReconciler()
        self._background_tasks: Set[asyncio.Task] = set()

        self._panel_listeners: List[PanelListener] = []
        self._notice_listeners: List[NoticeListener] = []
        self._title_listeners: List[TitleListener] = []

        self._channel.subscribe(self._on_completion_event)
        self._channel.subscribe(self._on_chunk_event)

    # ==================== State ====================

    @property
    def panels(self) -> List[PanelState]:
        return self._panels

    @property
    def panel_count(self) -> int:
        return len(self._panels)

    @property
    def conversation_id(self) -> Optional[str]:
        return self._conversation_id

    @property
    def conversation_title(self) -> Optional[str]:
        return self._conversation_title

    @property
    def model_selection(self) -> List[Optional[str]]:
        return [p.model_id for p in self._panels]

    @property
    def is_any_streaming(self) -> bool:
        return any(p.is_streaming for p in self._panels)

    @property
    def has_any_messages(self) -> bool:
        return any(p.messages for p in self._panels)

    @property
    def active_stream_ids(self) -> List[str]:
        return list(self._stream_panels)

    @property
    def reconciler(self) -> CompletionReconciler:
        return self._reconciler

    def panel_for_stream(self, stream_id: str) -> Optional[int]:
        return self._stream_panels.get(stream_id)

    # ==================== Listeners ====================

    def add_listener(self, listener: PanelListener) -> None:
        """Call `listener(panel_index)` whenever a panel changes."""
        self._panel_listeners.append(listener)

    def add_notice_listener(self, listener: NoticeListener) -> None:
        """Call `listener(message)` for non-fatal problems (e.g. storage failures)."""
        self._notice_listeners.append(listener)

    def add_title_listener(self, listener: TitleListener) -> None:
        """Call `listener(conversation_id, title)` when a title is generated."""
        self._title_listeners.append(listener)

    def _notify_panel(self, index: int) -> None:
        for listener in list(self._panel_listeners):
            listener(index)

    def _notify_all_panels(self) -> None:
        for panel in self._panels:
            self._notify_panel(panel.index)

    def _notice(self, message: str) -> None:
        for listener in list(self._notice_listeners):
            listener(message)

    # ==================== Model selection ====================

    def set_model(self, panel_index: int, model_id: Optional[str]) -> None:
        """Select the model of one panel (None empties the panel).

        Raises:
            ValidationError: If the index is out of range or the panel is streaming
        """
        if not 0 <= panel_index < len(self._panels):
            raise ValidationError(f"No panel {panel_index}")
        panel = self._panels[panel_index]
        if panel.is_streaming:
            raise ValidationError("Cannot change the model while the panel is streaming")
        panel.model_id = model_id or None
        self._save_selection()
        self._notify_panel(panel_index)

    def load_preset(self, model_ids: Sequence[Optional[str]]) -> None:
        """Apply a preset, one model per panel in order."""
        if self.is_any_streaming:
            raise ValidationError("Cannot load a preset while streaming")
        for panel in self._panels:
            panel.model_id = model_ids[panel.index] if panel.index < len(model_ids) else None
            panel.model_id = panel.model_id or None
        self._save_selection()
        self._notify_all_panels()

    def restore_selection(self) -> None:
        """Apply the model selection remembered in preferences."""
        if self._preferences is None:
            return
        saved = self._preferences.preferences.last_model_selection
        for panel in self._panels:
            if panel.index < len(saved):
                panel.model_id = saved[panel.index] or None
        self._notify_all_panels()

    def save_preset(self, name: str) -> Optional[PresetRecord]:
        """Store the current selection as a named preset.

        Returns:
            The saved preset, None if it could not be stored
        """
        name = name.strip()
        if not name:
            raise ValidationError("Preset name is required")
        preset = PresetRecord.create(name, self.model_selection)
        if self._persist("save preset", lambda: self._store.save_preset(preset)):
            return preset
        return None

    def _save_selection(self) -> None:
        if self._preferences is None:
            return
        try:
            self._preferences.update_model_selection(self.model_selection)
        except OSError as e:
            logger.warning("Could not save model selection: %s", e)
            self._notice(f"Could not save model selection: {e}")

    # ==================== Submit ====================

    def _next_stream_id(self) -> str:
        self._stream_counter += 1
        return f"stream-{self._stream_counter}-{uuid.uuid4().hex[:8]}"

    def submit(self, prompt: str) -> List[str]:
        """Send a prompt to every panel that has a model selected.

        Must be called from the running event loop. Returns once every
        stream has been started; responses arrive through the channel.

        Args:
            prompt: The user's message

        Returns:
            IDs of the started streams, in panel order

        Raises:
            ValidationError: If the prompt is empty, no model is selected
                or a previous exchange is still streaming
            CredentialError: If a required API key is missing
            RestrictionError: If free mode targets a paid model
            PersistenceError: If a new conversation cannot be created
        """
        if not prompt.strip():
            raise ValidationError("Prompt is empty")

        active = [p for p in self._panels if p.model_id]
        if not active:
            raise ValidationError("Please select at least one model")
        if self.is_any_streaming:
            raise ValidationError("Responses are still streaming")

        # Reject the whole submit before anything is stored or sent
        for panel in active:
            self._registry.check_credentials(panel.model_id)

        if self._conversation_id is None:
            conversation_id = new_id()
            self._store.create_conversation(
                conversation_id, None, [p.model_id for p in active]
            )
            self._conversation_id = conversation_id
            self._conversation_title = None
            self._reconciler.expect(len(active), prompt)
            logger.info("Created conversation %s", conversation_id)

        conversation_id = self._conversation_id
        self._persist(
            "save user message",
            lambda: self._store.add_message(MessageRecord.user(conversation_id, prompt)),
        )

        stream_ids = []
        for panel in active:
            stream_id = self._next_stream_id()
            model_id = panel.model_id

            panel.messages.append(ChatMessage(role="user", content=prompt))
            panel.reset_result()
            panel.is_streaming = True
            self._stream_panels[stream_id] = panel.index
            self._stream_models[stream_id] = model_id

            try:
                self._registry.start(stream_id, model_id, panel.history())
            except FaceoffError as e:
                logger.warning("Could not start %s on panel %d: %s", model_id, panel.index, e)
                self._fail_panel(stream_id, panel, str(e))
            else:
                stream_ids.append(stream_id)

            self._notify_panel(panel.index)

        return stream_ids

    def _fail_panel(self, stream_id: str, panel: PanelState, message: str) -> None:
        """Mark a panel failed before its stream ever ran."""
        panel.is_streaming = False
        panel.error = message
        self._forget_stream(stream_id)
        if self._reconciler.claim(stream_id):
            self._count_completion()

    def _forget_stream(self, stream_id: str) -> None:
        self._stream_panels.pop(stream_id, None)
        self._stream_models.pop(stream_id, None)

    # ==================== Chunk routing ====================

    def _on_completion_event(self, event: ChunkEvent) -> None:
        """Side-effect listener: runs completion work for finished streams."""
        if not event.done:
            return
        panel_index = self._stream_panels.get(event.stream_id)
        if panel_index is None:
            return
        self._complete_stream(event, panel_index, self._stream_models.get(event.stream_id))

    def _on_chunk_event(self, event: ChunkEvent) -> None:
        """State listener: merges a chunk event into its panel."""
        panel_index = self._stream_panels.get(event.stream_id)
        if panel_index is None:
            # Stale or unknown stream
            return
        panel = self._panels[panel_index]
        model_id = self._stream_models.get(event.stream_id)

        if event.error is not None:
            panel.error = event.error
            panel.is_streaming = False
            self._complete_stream(event, panel_index, model_id)
            self._forget_stream(event.stream_id)
        elif event.done:
            content = event.full_content
            if content is None:
                content = panel.current_response
            panel.messages.append(ChatMessage(role="assistant", content=content))
            panel.current_response = ""
            panel.usage = event.usage
            panel.latency_ms = event.latency_ms
            panel.cost = compute_cost(event.usage, self._model_info(model_id))
            panel.is_streaming = False
            self._complete_stream(event, panel_index, model_id)
            self._forget_stream(event.stream_id)
        else:
            panel.current_response += event.content

        self._notify_panel(panel_index)

    def _model_info(self, model_id: Optional[str]):
        if self._catalog is None or model_id is None:
            return None
        return self._catalog.get_model(model_id)

    # ==================== Completion side effects ====================

    def _complete_stream(
        self,
        event: ChunkEvent,
        panel_index: int,
        model_id: Optional[str],
    ) -> None:
        """Log, persist and count a finished stream, once per stream id."""
        if not self._reconciler.claim(event.stream_id):
            return

        model_id = model_id or ""
        conversation_id = self._conversation_id
        usage = event.usage
        latency_ms = event.latency_ms or 0

        if event.error is not None:
            log = ApiLogRecord(
                id=new_id(),
                conversation_id=conversation_id,
                model_id=model_id,
                provider=provider_of(model_id) or None,
                latency_ms=latency_ms,
                status="error",
                error_message=event.error,
            )
            self._persist("log api call", lambda: self._store.add_api_log(log))
        else:
            cost = compute_cost(usage, self._model_info(model_id))
            log = ApiLogRecord(
                id=new_id(),
                conversation_id=conversation_id,
                model_id=model_id,
                provider=provider_of(model_id) or None,
                request_tokens=usage.prompt_tokens if usage else None,
                response_tokens=usage.completion_tokens if usage else None,
                total_tokens=usage.total_tokens if usage else None,
                latency_ms=latency_ms,
                cost=cost,
                status="success",
            )
            self._persist("log api call", lambda: self._store.add_api_log(log))

            content = event.full_content
            if content is None:
                # Runs before the state listener flushes the buffer
                content = self._panels[panel_index].current_response
            if conversation_id is not None:
                message = MessageRecord.assistant(
                    conversation_id=conversation_id,
                    content=content,
                    model_id=model_id,
                    panel_index=panel_index,
                    tokens_prompt=usage.prompt_tokens if usage else None,
                    tokens_completion=usage.completion_tokens if usage else None,
                    latency_ms=event.latency_ms,
                    cost=cost,
                )
                self._persist("save assistant message", lambda: self._store.add_message(message))

        self._count_completion()

    def _count_completion(self) -> None:
        if self._reconciler.record_completion():
            self._spawn_title_generation()

    def _persist(self, operation: str, action: Callable[[], object]) -> bool:
        """Run a storage call; failures become notices, never exceptions."""
        try:
            action()
            return True
        except PersistenceError as e:
            logger.warning("Could not %s: %s", operation, e)
            self._notice(f"Could not {operation}: {e}")
            return False

    # ==================== Title generation ====================

    def _spawn_title_generation(self) -> None:
        prompt = self._reconciler.title_prompt
        conversation_id = self._conversation_id
        if not prompt or conversation_id is None:
            return
        self._create_task(
            self._generate_title(conversation_id, prompt),
            name=f"title:{conversation_id}",
        )

    async def _generate_title(self, conversation_id: str, prompt: str) -> None:
        adapter = self._title_adapter_factory()
        try:
            result = await self._title_generator.generate_title(prompt, adapter)
        finally:
            close = getattr(adapter, "aclose", None)
            if close is not None:
                await close()

        if not result.success:
            logger.info("No title for conversation %s: %s", conversation_id, result.error)
            return

        if not self._persist(
            "save conversation title",
            lambda: self._store.update_conversation_title(conversation_id, result.title),
        ):
            return

        if self._conversation_id == conversation_id:
            self._conversation_title = result.title
        logger.info("Titled conversation %s: %s", conversation_id, result.title)
        for listener in list(self._title_listeners):
            listener(conversation_id, result.title)

    # ==================== Task Management ====================

    def _create_task(self, coro, name: str = "") -> asyncio.Task:
        """Create a tracked fire-and-forget task.

        Args:
            coro: Coroutine to run
            name: Optional task name for debugging

        Returns:
            The created task
        """
        task = asyncio.create_task(coro)
        if name:
            task.set_name(name)
        self._background_tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        """Forget a finished background task and log its failure."""
        self._background_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task '%s' failed", task.get_name(), exc_info=exc)

    async def wait_for_background_tasks(self, timeout: Optional[float] = None) -> None:
        """Wait for pending fire-and-forget work such as title generation."""
        if self._background_tasks:
            await asyncio.wait(set(self._background_tasks), timeout=timeout)

    # ==================== Stop / clear / load ====================

    def stop_all(self) -> None:
        """Cancel every active stream without waiting for the network layer.

        Partial responses stay visible in the panels but are not added to
        their history. Stopped streams count as finished for title
        generation and never run completion side effects.
        """
        for stream_id in list(self._stream_panels):
            self._registry.stop(stream_id)
            self._forget_stream(stream_id)
            if self._reconciler.claim(stream_id):
                self._count_completion()

        for panel in self._panels:
            if panel.is_streaming:
                panel.is_streaming = False
                self._notify_panel(panel.index)

    def clear(self) -> None:
        """Reset every panel and detach the conversation."""
        # Streams stopped here must not title the discarded conversation
        self._reconciler.mark_title_decided()
        self.stop_all()
        for panel in self._panels:
            panel.reset()
        self._conversation_id = None
        self._conversation_title = None
        self._reconciler.reset()
        self._notify_all_panels()

    def load_conversation(self, conversation_id: str) -> None:
        """Restore a stored conversation into the panels for continuation.

        Raises:
            ValidationError: If the conversation does not exist
            PersistenceError: If it cannot be read
        """
        found = self._store.get_conversation(conversation_id)
        if found is None:
            raise ValidationError(f"Conversation {conversation_id} not found")
        conversation, messages = found

        self.stop_all()
        models = restore_panel_models(messages, conversation.models, len(self._panels))
        dispatched = {index for index, model_id in enumerate(models) if model_id}
        histories = rebuild_panel_histories(messages, len(self._panels), dispatched)

        for panel in self._panels:
            panel.reset()
            panel.model_id = models[panel.index]
            panel.messages = histories[panel.index]

        self._conversation_id = conversation.id
        self._conversation_title = conversation.title
        # A restored conversation never gets an automatic title
        self._reconciler.reset()
        self._reconciler.mark_title_decided()

        self._save_selection()
        self._notify_all_panels()
        logger.info("Loaded conversation %s (%d messages)", conversation.id, len(messages))

    async def aclose(self, timeout: Optional[float] = None) -> None:
        """Stop streams and wait for background work on shutdown."""
        self.stop_all()
        await self._registry.aclose(timeout=timeout)
        await self.wait_for_background_tasks(timeout=timeout)
        for task in list(self._background_tasks):
            task.cancel()
        self._channel.unsubscribe(self._on_completion_event)
        self._channel.unsubscribe(self._on_chunk_event)
