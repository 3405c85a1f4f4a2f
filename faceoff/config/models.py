"""Model catalog for OpenRouter.

The catalog fetches the models list once and caches it for a limited time.
The cache is keyed by credential mode: switching between free mode and an
authenticated key invalidates it, because the free-mode list is filtered.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import httpx

from .settings import settings
from ..errors import UpstreamError


logger = logging.getLogger(__name__)

FREE_SUFFIX = ":free"


@dataclass
class ModelInfo:
    """Metadata for one OpenRouter model.

    Prices are USD per million tokens, None when the listing does not give
    a usable price.
    """

    model_id: str
    display_name: str
    context_window: int = 0
    max_output_tokens: Optional[int] = None
    prompt_price: Optional[float] = None
    completion_price: Optional[float] = None
    description: str = ""

    @property
    def provider(self) -> str:
        """Provider prefix of the model id ("openai" for "openai/gpt-4o")."""
        return provider_of(self.model_id)

    @property
    def is_free(self) -> bool:
        """True for ":free" models and models listed at zero cost."""
        if is_free_model_id(self.model_id):
            return True
        return self.prompt_price == 0 and self.completion_price == 0

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "ModelInfo":
        """Build from one entry of the /models response."""
        pricing = data.get("pricing") or {}
        top_provider = data.get("top_provider") or {}
        return cls(
            model_id=data["id"],
            display_name=data.get("name") or data["id"],
            context_window=data.get("context_length") or 0,
            max_output_tokens=top_provider.get("max_completion_tokens"),
            prompt_price=_per_million(pricing.get("prompt")),
            completion_price=_per_million(pricing.get("completion")),
            description=data.get("description") or "",
        )


def _per_million(per_token: Any) -> Optional[float]:
    """Convert a per-token price string to a per-million-token price."""
    if per_token is None:
        return None
    try:
        value = float(per_token)
    except (TypeError, ValueError):
        return None
    # OpenRouter lists variable-price routers as -1
    if value < 0:
        return None
    return value * 1_000_000


def is_free_model_id(model_id: str) -> bool:
    """Check the ":free" id suffix convention."""
    return model_id.endswith(FREE_SUFFIX)


def provider_of(model_id: str) -> str:
    """Get the provider prefix of a model id."""
    return model_id.split("/", 1)[0] if "/" in model_id else ""


@dataclass
class CacheEntry:
    """Cached models list together with when and for which mode it was fetched."""

    value: List[ModelInfo]
    timestamp: float
    mode_key: str

    def is_valid(self, mode_key: str, now: float, ttl: float) -> bool:
        return self.mode_key == mode_key and now - self.timestamp < ttl


def mode_key_for(api_key: Optional[str]) -> str:
    return "authenticated" if api_key else "free"


class ModelCatalog:
    """Fetches and caches the OpenRouter models list.

    One instance is shared by the stream registry (free-model checks) and
    the orchestrator (pricing). It is injected rather than global.
    """

    def __init__(
        self,
        api_key_provider: Callable[[], Optional[str]],
        base_url: Optional[str] = None,
        ttl: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the catalog.

        Args:
            api_key_provider: Returns the current API key or None
            base_url: OpenRouter API base URL
            ttl: Cache lifetime in seconds
            transport: Optional httpx transport (used by tests)
            clock: Monotonic time source
        """
        self._api_key_provider = api_key_provider
        self._base_url = (base_url or settings.openrouter_base_url).rstrip("/")
        self._ttl = settings.models_cache_ttl if ttl is None else ttl
        self._transport = transport
        self._clock = clock
        self._cache: Optional[CacheEntry] = None

    @property
    def is_free_mode(self) -> bool:
        return not self._api_key_provider()

    async def get_models(self, force_refresh: bool = False) -> List[ModelInfo]:
        """Get the models available in the current credential mode.

        Args:
            force_refresh: Ignore the cache

        Returns:
            List of ModelInfo, only free models when no API key is set

        Raises:
            UpstreamError: If the models endpoint answers with an error
        """
        api_key = self._api_key_provider()
        mode_key = mode_key_for(api_key)
        now = self._clock()

        if (
            not force_refresh
            and self._cache is not None
            and self._cache.is_valid(mode_key, now, self._ttl)
        ):
            return self._cache.value

        models = await self._fetch_models(api_key)
        self._cache = CacheEntry(value=models, timestamp=self._clock(), mode_key=mode_key)
        logger.info("Fetched %d models (%s mode)", len(models), mode_key)
        return models

    def clear_cache(self) -> None:
        """Drop the cached models list."""
        self._cache = None

    def get_model(self, model_id: str) -> Optional[ModelInfo]:
        """Look up a model in the cached list without fetching.

        Args:
            model_id: The model identifier

        Returns:
            ModelInfo if cached, None otherwise
        """
        if self._cache is None:
            return None
        for model in self._cache.value:
            if model.model_id == model_id:
                return model
        return None

    def is_free(self, model_id: str) -> bool:
        """Decide whether a model may be used without a credential."""
        if is_free_model_id(model_id):
            return True
        model = self.get_model(model_id)
        return model is not None and model.is_free

    async def _fetch_models(self, api_key: Optional[str]) -> List[ModelInfo]:
        headers = {
            "HTTP-Referer": settings.http_referer,
            "X-Title": settings.app_title,
        }
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        async with httpx.AsyncClient(
            base_url=self._base_url,
            transport=self._transport,
            timeout=settings.connect_timeout,
        ) as client:
            response = await client.get("/models", headers=headers)
            if not response.is_success:
                raise UpstreamError(response.status_code, response.text)
            payload = response.json()

        models = []
        for entry in payload.get("data", []):
            try:
                models.append(ModelInfo.from_api(entry))
            except (KeyError, TypeError) as e:
                logger.debug("Skipping malformed model entry: %s", e)

        if not api_key:
            models = [m for m in models if m.is_free]

        return models
