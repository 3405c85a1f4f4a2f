"""Tests for the panel orchestrator."""

import json

import httpx
import pytest

from faceoff.config.models import ModelCatalog
from faceoff.config.persistence import PersistenceManager
from faceoff.errors import PersistenceError, RestrictionError, UpstreamError, ValidationError
from faceoff.llm.base_adapter import ChatMessage, ChunkEvent, PartialChunk, TerminalChunk, Usage
from faceoff.orchestrator.chunk_channel import ChunkChannel
from faceoff.orchestrator.panel_orchestrator import PanelOrchestrator
from faceoff.orchestrator.stream_registry import StreamRegistry
from faceoff.storage.conversation_store import ConversationStore
from faceoff.summarization.title_generator import TitleGenerator

from conftest import FakeAdapter, Gate, reply


MODEL_X = "acme/model-x"
MODEL_Y = "acme/model-y"


def make_orchestrator(store, scripts, api_key="sk-or-test", catalog=None,
                      title_adapter=None, preferences=None):
    channel = ChunkChannel()
    adapter = FakeAdapter(scripts)
    registry = StreamRegistry(
        channel,
        lambda: api_key,
        catalog=catalog,
        adapter_factory=lambda key: adapter,
    )
    title_adapter = title_adapter or FakeAdapter()
    orchestrator = PanelOrchestrator(
        store=store,
        registry=registry,
        channel=channel,
        title_adapter_factory=lambda: title_adapter,
        catalog=catalog,
        title_generator=TitleGenerator(model_id="acme/tiny:free"),
        preferences=preferences,
        panel_count=3,
    )
    return orchestrator, registry, adapter, title_adapter


async def settle(orchestrator, registry):
    await registry.join(timeout=5)
    await orchestrator.wait_for_background_tasks(timeout=5)


def two_model_scripts():
    return {
        MODEL_X: reply("Hello from X"),
        MODEL_Y: reply("Hi from Y"),
    }


class ReplayingFakeAdapter(FakeAdapter):
    """Fake whose scripts are consumed one reply per call."""

    async def stream(self, model_id, messages, cancel_event=None):
        self.stream_calls.append({"model_id": model_id, "messages": list(messages)})
        for item in self.scripts[model_id].pop(0):
            yield item


# =============================================================================
# Submit
# =============================================================================


@pytest.mark.asyncio
async def test_submit_starts_one_stream_per_selected_panel(store):
    orchestrator, registry, adapter, _ = make_orchestrator(store, two_model_scripts())
    orchestrator.set_model(0, MODEL_X)
    orchestrator.set_model(1, MODEL_Y)

    stream_ids = orchestrator.submit("Hello")

    assert len(stream_ids) == 2
    assert len(set(stream_ids)) == 2
    assert orchestrator.panel_for_stream(stream_ids[0]) == 0
    assert orchestrator.panel_for_stream(stream_ids[1]) == 1
    assert orchestrator.panels[0].is_streaming
    assert orchestrator.panels[2].messages == []
    assert not orchestrator.panels[2].is_streaming

    await settle(orchestrator, registry)

    assert sorted(call["model_id"] for call in adapter.stream_calls) == [MODEL_X, MODEL_Y]
    conversation, _ = store.get_conversation(orchestrator.conversation_id)
    assert conversation.models == [MODEL_X, MODEL_Y]


@pytest.mark.asyncio
async def test_completed_streams_update_their_own_panels(store):
    orchestrator, registry, _, _ = make_orchestrator(store, two_model_scripts())
    orchestrator.set_model(0, MODEL_X)
    orchestrator.set_model(1, MODEL_Y)

    orchestrator.submit("Hello")
    await settle(orchestrator, registry)

    first, second, third = orchestrator.panels
    assert first.messages == [
        ChatMessage(role="user", content="Hello"),
        ChatMessage(role="assistant", content="Hello from X"),
    ]
    assert second.messages[-1].content == "Hi from Y"
    assert first.current_response == ""
    assert first.latency_ms == 120
    assert first.usage.completion_tokens == 3
    assert not orchestrator.is_any_streaming
    assert third.messages == []
    assert orchestrator.active_stream_ids == []


@pytest.mark.asyncio
async def test_submit_validates_prompt_and_selection(store):
    orchestrator, _, adapter, _ = make_orchestrator(store, {})

    with pytest.raises(ValidationError):
        orchestrator.submit("Hello")

    orchestrator.set_model(0, MODEL_X)
    with pytest.raises(ValidationError):
        orchestrator.submit("   ")

    assert adapter.stream_calls == []
    assert store.list_conversations() == []


@pytest.mark.asyncio
async def test_free_mode_rejects_paid_model_before_anything_is_stored(store):
    orchestrator, _, adapter, _ = make_orchestrator(store, {}, api_key=None)
    orchestrator.set_model(0, "acme/tiny:free")
    orchestrator.set_model(1, MODEL_X)

    with pytest.raises(RestrictionError):
        orchestrator.submit("Hello")

    assert adapter.stream_calls == []
    assert store.list_conversations() == []
    assert orchestrator.conversation_id is None
    assert not orchestrator.is_any_streaming


@pytest.mark.asyncio
async def test_cannot_submit_while_streaming(store):
    gate = Gate()
    orchestrator, registry, _, _ = make_orchestrator(store, {MODEL_X: [gate] + reply("ok")})
    orchestrator.set_model(0, MODEL_X)

    orchestrator.submit("Hello")
    with pytest.raises(ValidationError):
        orchestrator.submit("Again")
    with pytest.raises(ValidationError):
        orchestrator.set_model(0, MODEL_Y)

    gate.release()
    await settle(orchestrator, registry)


# =============================================================================
# Side effects
# =============================================================================


@pytest.mark.asyncio
async def test_side_effects_run_exactly_once_per_stream(store):
    orchestrator, registry, _, _ = make_orchestrator(store, two_model_scripts())
    orchestrator.set_model(0, MODEL_X)
    orchestrator.set_model(1, MODEL_Y)

    orchestrator.submit("Hello")
    await settle(orchestrator, registry)

    logs, total = store.get_api_logs()
    assert total == 2
    assert {log.status for log in logs} == {"success"}
    assert {log.model_id for log in logs} == {MODEL_X, MODEL_Y}

    _, messages = store.get_conversation(orchestrator.conversation_id)
    assert [m.role for m in messages].count("user") == 1
    assistants = [m for m in messages if m.role == "assistant"]
    assert sorted((m.panel_index, m.model_id) for m in assistants) == [(0, MODEL_X), (1, MODEL_Y)]


@pytest.mark.asyncio
async def test_cost_uses_catalog_prices(store):
    def handler(request):
        return httpx.Response(200, json={"data": [{
            "id": MODEL_X,
            "name": "Model X",
            "pricing": {"prompt": "0.000001", "completion": "0.000002"},
        }]})

    catalog = ModelCatalog(lambda: "sk-or-test", transport=httpx.MockTransport(handler))
    await catalog.get_models()
    script = [
        PartialChunk(content="Hel"),
        PartialChunk(content="lo"),
        TerminalChunk(
            full_content="Hello",
            latency_ms=80,
            usage=Usage(prompt_tokens=10, completion_tokens=2, total_tokens=12),
        ),
    ]
    orchestrator, registry, _, _ = make_orchestrator(store, {MODEL_X: script}, catalog=catalog)
    orchestrator.set_model(0, MODEL_X)

    orchestrator.submit("Hi")
    await settle(orchestrator, registry)

    assert orchestrator.panels[0].cost == pytest.approx(0.000014)
    _, messages = store.get_conversation(orchestrator.conversation_id)
    assistant = [m for m in messages if m.role == "assistant"][0]
    assert assistant.cost == pytest.approx(0.000014)
    assert assistant.tokens_prompt == 10
    assert assistant.latency_ms == 80


@pytest.mark.asyncio
async def test_failed_stream_only_affects_its_panel(store):
    scripts = {
        MODEL_X: reply("Fine"),
        MODEL_Y: [PartialChunk(content="par"), UpstreamError(429, "rate limited")],
    }
    orchestrator, registry, _, title_adapter = make_orchestrator(store, scripts)
    orchestrator.set_model(0, MODEL_X)
    orchestrator.set_model(1, MODEL_Y)

    orchestrator.submit("Hello")
    await settle(orchestrator, registry)

    good, bad, _ = orchestrator.panels
    assert good.error is None
    assert good.messages[-1].content == "Fine"
    assert bad.error == "API error: 429 - rate limited"
    assert not bad.is_streaming
    assert bad.messages == [ChatMessage(role="user", content="Hello")]

    logs, _ = store.get_api_logs()
    statuses = sorted((log.model_id, log.status) for log in logs)
    assert statuses == [(MODEL_X, "success"), (MODEL_Y, "error")]
    error_log = [log for log in logs if log.status == "error"][0]
    assert error_log.error_message == "API error: 429 - rate limited"
    # An errored stream still counts as finished for the title
    assert len(title_adapter.complete_calls) == 1


@pytest.mark.asyncio
async def test_persistence_failure_becomes_notice(tmp_path):
    class FailingStore(ConversationStore):
        def add_api_log(self, log):
            raise PersistenceError("add api log")

    store = FailingStore(tmp_path / "faceoff.db")
    orchestrator, registry, _, _ = make_orchestrator(store, {MODEL_X: reply("Still shown")})
    notices = []
    orchestrator.add_notice_listener(notices.append)
    orchestrator.set_model(0, MODEL_X)

    orchestrator.submit("Hello")
    await settle(orchestrator, registry)

    assert orchestrator.panels[0].messages[-1].content == "Still shown"
    assert any("log api call" in notice for notice in notices)
    _, messages = store.get_conversation(orchestrator.conversation_id)
    assert [m.role for m in messages] == ["user", "assistant"]


@pytest.mark.asyncio
async def test_events_for_unknown_streams_are_ignored(store):
    orchestrator, _, _, _ = make_orchestrator(store, {})
    changed = []
    orchestrator.add_listener(changed.append)

    orchestrator._channel.publish(ChunkEvent(stream_id="ghost", content="boo"))
    orchestrator._channel.publish(ChunkEvent(stream_id="ghost", done=True, full_content="boo"))

    assert changed == []
    assert all(p.current_response == "" for p in orchestrator.panels)
    assert store.get_api_logs()[1] == 0


# =============================================================================
# Titles
# =============================================================================


@pytest.mark.asyncio
async def test_title_generated_once_after_first_exchange(store):
    scripts = {
        MODEL_X: [reply("X one"), reply("X two")],
        MODEL_Y: [reply("Y one"), reply("Y two")],
    }
    channel_adapter = ReplayingFakeAdapter(scripts)
    channel = ChunkChannel()
    registry = StreamRegistry(channel, lambda: "sk-or-test", adapter_factory=lambda key: channel_adapter)
    title_adapter = FakeAdapter(title='"Greeting Exchange."')
    orchestrator = PanelOrchestrator(
        store=store,
        registry=registry,
        channel=channel,
        title_adapter_factory=lambda: title_adapter,
        title_generator=TitleGenerator(model_id="acme/tiny:free"),
        panel_count=3,
    )
    titles = []
    orchestrator.add_title_listener(lambda cid, title: titles.append((cid, title)))
    orchestrator.set_model(0, MODEL_X)
    orchestrator.set_model(1, MODEL_Y)

    orchestrator.submit("Hello")
    await settle(orchestrator, registry)

    assert len(title_adapter.complete_calls) == 1
    call = title_adapter.complete_calls[0]
    assert call["model_id"] == "acme/tiny:free"
    assert call["messages"] == [{"role": "user", "content": "Hello"}]
    conversation, _ = store.get_conversation(orchestrator.conversation_id)
    assert conversation.title == "Greeting Exchange"
    assert orchestrator.conversation_title == "Greeting Exchange"
    assert titles == [(orchestrator.conversation_id, "Greeting Exchange")]
    assert title_adapter.closed == 1

    orchestrator.submit("How are you?")
    await settle(orchestrator, registry)

    assert len(title_adapter.complete_calls) == 1
    # Second turn carries the whole panel history
    second_call = channel_adapter.stream_calls[-1]["messages"]
    assert [m["role"] for m in second_call] == ["user", "assistant", "user"]


@pytest.mark.asyncio
async def test_title_failure_is_swallowed(store):
    title_adapter = FakeAdapter(complete_error=UpstreamError(503, "busy"))
    orchestrator, registry, _, _ = make_orchestrator(
        store, {MODEL_X: reply("ok")}, title_adapter=title_adapter
    )
    orchestrator.set_model(0, MODEL_X)

    orchestrator.submit("Hello")
    await settle(orchestrator, registry)

    conversation, _ = store.get_conversation(orchestrator.conversation_id)
    assert conversation.title is None
    assert orchestrator.panels[0].messages[-1].content == "ok"


# =============================================================================
# Stop / clear / load
# =============================================================================


@pytest.mark.asyncio
async def test_stop_all_keeps_partial_text_but_not_history(store):
    gate = Gate()
    script = [PartialChunk(content="partial"), gate] + reply("never arrives")
    orchestrator, registry, _, _ = make_orchestrator(store, {MODEL_X: script})
    orchestrator.set_model(0, MODEL_X)

    orchestrator.submit("Hello")
    await gate.reached.wait()
    assert orchestrator.panels[0].current_response == "partial"

    orchestrator.stop_all()
    gate.release()
    await settle(orchestrator, registry)

    panel = orchestrator.panels[0]
    assert not panel.is_streaming
    assert panel.current_response == "partial"
    assert panel.messages == [ChatMessage(role="user", content="Hello")]
    assert orchestrator.active_stream_ids == []
    assert store.get_api_logs()[1] == 0
    _, messages = store.get_conversation(orchestrator.conversation_id)
    assert [m.role for m in messages] == ["user"]


@pytest.mark.asyncio
async def test_clear_resets_panels_but_keeps_models(store):
    orchestrator, registry, _, title_adapter = make_orchestrator(store, {MODEL_X: reply("ok")})
    orchestrator.set_model(0, MODEL_X)
    orchestrator.submit("Hello")
    await settle(orchestrator, registry)
    first_conversation = orchestrator.conversation_id

    orchestrator.clear()

    assert orchestrator.conversation_id is None
    assert not orchestrator.has_any_messages
    assert orchestrator.model_selection == [MODEL_X, None, None]
    assert orchestrator.panels[0].usage is None

    orchestrator.submit("Fresh start")
    await settle(orchestrator, registry)

    assert orchestrator.conversation_id != first_conversation
    assert len(store.list_conversations()) == 2
    assert len(title_adapter.complete_calls) == 2


@pytest.mark.asyncio
async def test_clear_during_first_exchange_generates_no_title(store):
    gate = Gate()
    script = [PartialChunk(content="partial"), gate] + reply("never arrives")
    orchestrator, registry, _, title_adapter = make_orchestrator(store, {MODEL_X: script})
    orchestrator.set_model(0, MODEL_X)

    orchestrator.submit("Hello")
    await gate.reached.wait()
    orchestrator.clear()
    gate.release()
    await settle(orchestrator, registry)

    assert title_adapter.complete_calls == []
    assert [c.title for c in store.list_conversations()] == [None]


@pytest.mark.asyncio
async def test_load_conversation_restores_panels(store):
    scripts = {
        MODEL_X: [reply("X one"), reply("X two")],
        MODEL_Y: [reply("Y one"), reply("Y two")],
    }
    channel = ChunkChannel()
    adapter = ReplayingFakeAdapter(scripts)
    registry = StreamRegistry(channel, lambda: "sk-or-test", adapter_factory=lambda key: adapter)
    orchestrator = PanelOrchestrator(
        store=store,
        registry=registry,
        channel=channel,
        title_adapter_factory=FakeAdapter,
        panel_count=3,
    )
    orchestrator.set_model(0, MODEL_X)
    orchestrator.set_model(2, MODEL_Y)
    orchestrator.submit("First")
    await settle(orchestrator, registry)
    orchestrator.submit("Second")
    await settle(orchestrator, registry)

    restored, _, _, title_adapter = make_orchestrator(store, {MODEL_X: reply("X three")})
    restored.load_conversation(orchestrator.conversation_id)

    assert restored.conversation_id == orchestrator.conversation_id
    assert restored.model_selection == [MODEL_X, None, MODEL_Y]
    for live, loaded in zip(orchestrator.panels, restored.panels):
        assert loaded.messages == live.messages

    # Continuing a restored conversation never generates a title
    restored.submit("Third")
    await settle(restored, restored._registry)
    assert title_adapter.complete_calls == []
    assert restored.panels[0].messages[-2:] == [
        ChatMessage(role="user", content="Third"),
        ChatMessage(role="assistant", content="X three"),
    ]


@pytest.mark.asyncio
async def test_load_conversation_keeps_panel_that_never_replied(store):
    scripts = {
        MODEL_X: reply("X reply"),
        MODEL_Y: [UpstreamError(500, "down")],
    }
    orchestrator, registry, _, _ = make_orchestrator(store, scripts)
    orchestrator.set_model(0, MODEL_X)
    orchestrator.set_model(1, MODEL_Y)
    orchestrator.submit("First")
    await settle(orchestrator, registry)
    orchestrator.submit("Second")
    await settle(orchestrator, registry)

    restored, _, _, _ = make_orchestrator(store, {})
    restored.load_conversation(orchestrator.conversation_id)

    assert restored.model_selection == [MODEL_X, MODEL_Y, None]
    assert restored.panels[1].messages == [
        ChatMessage(role="user", content="First"),
        ChatMessage(role="user", content="Second"),
    ]
    for live, loaded in zip(orchestrator.panels, restored.panels):
        assert loaded.messages == live.messages


@pytest.mark.asyncio
async def test_load_unknown_conversation_raises(store):
    orchestrator, _, _, _ = make_orchestrator(store, {})
    with pytest.raises(ValidationError):
        orchestrator.load_conversation("missing")


# =============================================================================
# Model selection
# =============================================================================


@pytest.mark.asyncio
async def test_model_selection_is_remembered(store, tmp_path):
    preferences = PersistenceManager(config_path=tmp_path / "config.json")
    orchestrator, _, _, _ = make_orchestrator(store, {}, preferences=preferences)

    orchestrator.set_model(1, MODEL_Y)
    orchestrator.load_preset([MODEL_X, "", MODEL_Y])

    saved = json.loads((tmp_path / "config.json").read_text(encoding="utf-8"))
    assert saved["last_model_selection"] == [MODEL_X, None, MODEL_Y]

    again, _, _, _ = make_orchestrator(
        store, {}, preferences=PersistenceManager(config_path=tmp_path / "config.json")
    )
    again.restore_selection()
    assert again.model_selection == [MODEL_X, None, MODEL_Y]


@pytest.mark.asyncio
async def test_save_preset_stores_current_selection(store):
    orchestrator, _, _, _ = make_orchestrator(store, {})
    orchestrator.set_model(0, MODEL_X)

    preset = orchestrator.save_preset("Duo")

    assert preset.models == [MODEL_X, None, None]
    assert [p.name for p in store.list_presets()] == ["Duo"]
    with pytest.raises(ValidationError):
        orchestrator.save_preset("  ")
