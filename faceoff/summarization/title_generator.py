"""Title generator for new conversations.

Asks a small free model for a short title based on the first prompt of a
conversation. Called by the orchestrator once the first exchange has
completed on every panel.
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional

from ..config.settings import settings
from ..errors import FaceoffError
from ..llm.base_adapter import LLMAdapter


logger = logging.getLogger(__name__)


TITLE_PROMPT = (
    "Generate a very short title (3-6 words) for a conversation that starts "
    "with the following message. Reply with ONLY the title, no quotes, no "
    "punctuation at the end."
)

MAX_TITLE_LENGTH = 80

_QUOTES = re.compile(r"^[\"'`]+|[\"'`]+$")


@dataclass
class TitleResult:
    """Result of a title generation."""

    title: str
    success: bool
    error: Optional[str] = None


class TitleGenerator:
    """Generates conversation titles.

    Does NOT:
    - Decide when to generate a title (orchestrator's job)
    - Persist the title
    """

    def __init__(self, model_id: Optional[str] = None, max_tokens: Optional[int] = None) -> None:
        """Initialize the title generator.

        Args:
            model_id: Model used for titles, defaults to a free model
            max_tokens: Token limit for the title completion
        """
        self._model_id = model_id or settings.title_model
        self._max_tokens = max_tokens or settings.title_max_tokens

    @property
    def model_id(self) -> str:
        return self._model_id

    async def generate_title(self, prompt: str, adapter: LLMAdapter) -> TitleResult:
        """Generate a title for a conversation starting with `prompt`.

        Args:
            prompt: First user message of the conversation
            adapter: LLM adapter to use for generation

        Returns:
            TitleResult; success is False when the call fails or the
            model returns nothing usable
        """
        if not prompt.strip():
            return TitleResult(title="", success=False, error="Empty prompt")

        try:
            result = await adapter.complete(
                model_id=self._model_id,
                messages=[{"role": "user", "content": prompt}],
                system=TITLE_PROMPT,
                max_tokens=self._max_tokens,
            )
        except FaceoffError as e:
            logger.warning("Title generation failed: %s", e)
            return TitleResult(title="", success=False, error=str(e))

        title = clean_title(result.content)
        if not title:
            return TitleResult(title="", success=False, error="Model returned an empty title")
        return TitleResult(title=title, success=True)


def clean_title(raw: str) -> str:
    """Strip quotes, surrounding whitespace and a trailing period.

    Args:
        raw: Raw model output

    Returns:
        Cleaned single-line title
    """
    title = raw.strip().splitlines()[0].strip() if raw.strip() else ""
    title = _QUOTES.sub("", title).strip()
    title = title.rstrip(".").strip()
    if len(title) > MAX_TITLE_LENGTH:
        title = title[:MAX_TITLE_LENGTH].rstrip() + "..."
    return title
