"""Completion reconciliation: cost accounting and exactly-once bookkeeping.

A stream's terminal event can be seen by more than one listener. The
reconciler hands out each stream id exactly once (`claim`), so whoever
claims it first runs the completion side effects and everyone else skips
them. It also counts completions of the first exchange of a new
conversation so title generation fires exactly once.
"""

import logging
import math
import threading
from typing import Optional, Set

from ..config.models import ModelInfo
from ..llm.base_adapter import Usage


logger = logging.getLogger(__name__)

TOKENS_PER_PRICE_UNIT = 1_000_000


def compute_cost(usage: Optional[Usage], model: Optional[ModelInfo]) -> Optional[float]:
    """Compute the cost of a completion.

    The provider's authoritative cost wins. Otherwise the cost is estimated
    from the model's per-million-token prices. Returns None when neither is
    available; the result is advisory and this function never raises.

    Args:
        usage: Usage reported for the completion
        model: Catalog entry for the model, if known

    Returns:
        Cost in USD or None
    """
    if usage is None:
        return None
    try:
        if usage.cost is not None:
            return float(usage.cost)
        if model is None or model.prompt_price is None or model.completion_price is None:
            return None
        cost = (
            (usage.prompt_tokens / TOKENS_PER_PRICE_UNIT) * model.prompt_price
            + (usage.completion_tokens / TOKENS_PER_PRICE_UNIT) * model.completion_price
        )
        return cost if math.isfinite(cost) else None
    except (TypeError, ValueError, OverflowError) as e:
        logger.warning("Could not compute cost: %s", e)
        return None


class CompletionReconciler:
    """Idempotency keys for completion side effects plus title bookkeeping.

    `claim` is an atomic check-and-insert so it stays correct even if
    listeners run on different threads.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._processed: Set[str] = set()
        self._expected_completions = 0
        self._completed = 0
        self._title_prompt: Optional[str] = None
        self._title_decided = True

    def claim(self, stream_id: str) -> bool:
        """Mark a stream as processed.

        Returns:
            True for the first caller with this id, False afterwards
        """
        with self._lock:
            if stream_id in self._processed:
                return False
            self._processed.add(stream_id)
            return True

    def is_processed(self, stream_id: str) -> bool:
        with self._lock:
            return stream_id in self._processed

    @property
    def title_prompt(self) -> Optional[str]:
        return self._title_prompt

    @property
    def title_pending(self) -> bool:
        """True while a new conversation still waits for its title."""
        return not self._title_decided

    def expect(self, count: int, prompt: str) -> None:
        """Arm title generation for the first exchange of a new conversation.

        Args:
            count: Number of streams dispatched for the exchange
            prompt: The exchange's prompt, used to generate the title
        """
        with self._lock:
            self._expected_completions = count
            self._completed = 0
            self._title_prompt = prompt
            self._title_decided = count <= 0

    def record_completion(self) -> bool:
        """Count one finished stream of the first exchange.

        Returns:
            True exactly once, when the last expected stream completes
        """
        with self._lock:
            if self._title_decided:
                return False
            self._completed += 1
            if self._completed < self._expected_completions:
                return False
            self._title_decided = True
            return True

    def mark_title_decided(self) -> None:
        """Disable title generation (restored conversations, cancelled exchanges)."""
        with self._lock:
            self._title_decided = True

    def reset(self) -> None:
        """Forget everything, as for a fresh orchestrator."""
        with self._lock:
            self._processed.clear()
            self._expected_completions = 0
            self._completed = 0
            self._title_prompt = None
            self._title_decided = True
