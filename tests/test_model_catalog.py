"""Tests for the OpenRouter model catalog and its cache."""

import httpx
import pytest

from faceoff.config.models import CacheEntry, ModelCatalog, ModelInfo, mode_key_for
from faceoff.errors import UpstreamError


MODELS_RESPONSE = {
    "data": [
        {
            "id": "acme/model-x",
            "name": "Acme: Model X",
            "context_length": 128000,
            "pricing": {"prompt": "0.000001", "completion": "0.000002"},
            "top_provider": {"max_completion_tokens": 4096},
        },
        {
            "id": "acme/tiny:free",
            "name": "Acme: Tiny (free)",
            "context_length": 8192,
            "pricing": {"prompt": "0", "completion": "0"},
        },
        {
            "id": "acme/zero",
            "name": "Acme: Zero",
            "pricing": {"prompt": "0", "completion": "0"},
        },
        {
            "id": "openrouter/auto",
            "name": "Auto Router",
            "pricing": {"prompt": "-1", "completion": "-1"},
        },
        {"name": "no id"},
    ]
}


class Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def make_catalog(keys, clock=None, status=200):
    requests = []

    def handler(request):
        requests.append(request)
        if status != 200:
            return httpx.Response(status, text="upstream down")
        return httpx.Response(200, json=MODELS_RESPONSE)

    catalog = ModelCatalog(
        lambda: keys[0],
        ttl=300,
        transport=httpx.MockTransport(handler),
        clock=clock or Clock(),
    )
    return catalog, requests


def test_model_info_converts_prices_to_per_million():
    info = ModelInfo.from_api(MODELS_RESPONSE["data"][0])

    assert info.display_name == "Acme: Model X"
    assert info.context_window == 128000
    assert info.max_output_tokens == 4096
    assert info.prompt_price == pytest.approx(1.0)
    assert info.completion_price == pytest.approx(2.0)
    assert info.provider == "acme"
    assert not info.is_free


def test_variable_price_is_unknown():
    info = ModelInfo.from_api(MODELS_RESPONSE["data"][3])
    assert info.prompt_price is None
    assert not info.is_free


def test_cache_entry_requires_matching_mode_and_age():
    entry = CacheEntry(value=[], timestamp=100.0, mode_key="free")

    assert entry.is_valid("free", now=399.0, ttl=300)
    assert not entry.is_valid("free", now=400.0, ttl=300)
    assert not entry.is_valid("authenticated", now=101.0, ttl=300)
    assert mode_key_for(None) == "free"
    assert mode_key_for("sk") == "authenticated"


@pytest.mark.asyncio
async def test_authenticated_list_skips_malformed_entries():
    catalog, requests = make_catalog(["sk-or-test"])

    models = await catalog.get_models()

    assert [m.model_id for m in models] == [
        "acme/model-x", "acme/tiny:free", "acme/zero", "openrouter/auto",
    ]
    assert requests[0].headers["Authorization"] == "Bearer sk-or-test"
    assert requests[0].url.path == "/api/v1/models"


@pytest.mark.asyncio
async def test_free_mode_lists_only_free_models():
    catalog, requests = make_catalog([None])

    models = await catalog.get_models()

    assert [m.model_id for m in models] == ["acme/tiny:free", "acme/zero"]
    assert "Authorization" not in requests[0].headers
    assert catalog.is_free_mode


@pytest.mark.asyncio
async def test_cache_is_reused_within_ttl_and_refreshed_after():
    clock = Clock()
    catalog, requests = make_catalog(["sk-or-test"], clock=clock)

    await catalog.get_models()
    clock.now += 299
    await catalog.get_models()
    assert len(requests) == 1

    clock.now += 2
    await catalog.get_models()
    assert len(requests) == 2

    await catalog.get_models(force_refresh=True)
    assert len(requests) == 3


@pytest.mark.asyncio
async def test_credential_change_invalidates_cache():
    keys = [None]
    catalog, requests = make_catalog(keys)

    free_models = await catalog.get_models()
    keys[0] = "sk-or-test"
    all_models = await catalog.get_models()

    assert len(requests) == 2
    assert len(all_models) > len(free_models)


@pytest.mark.asyncio
async def test_clear_cache_forces_fetch():
    catalog, requests = make_catalog(["sk-or-test"])
    await catalog.get_models()
    catalog.clear_cache()

    assert catalog.get_model("acme/model-x") is None
    await catalog.get_models()
    assert len(requests) == 2


@pytest.mark.asyncio
async def test_error_status_raises_upstream_error():
    catalog, _ = make_catalog(["sk-or-test"], status=503)

    with pytest.raises(UpstreamError) as excinfo:
        await catalog.get_models()
    assert excinfo.value.status == 503


@pytest.mark.asyncio
async def test_lookup_and_free_checks_use_cached_list():
    catalog, _ = make_catalog(["sk-or-test"])

    assert catalog.get_model("acme/model-x") is None
    assert catalog.is_free("anything:free")

    await catalog.get_models()

    assert catalog.get_model("acme/model-x").display_name == "Acme: Model X"
    assert catalog.is_free("acme/zero")
    assert not catalog.is_free("acme/model-x")
    assert not catalog.is_free("acme/unknown")
