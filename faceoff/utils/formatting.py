"""Display formatting for costs, latencies, prices and token counts."""

from typing import Optional

from ..llm.base_adapter import Usage


def format_cost(cost: Optional[float]) -> str:
    """Format a USD cost; sub-cent amounts keep four decimals."""
    if cost is None:
        return "-"
    if cost < 0.01:
        return f"${cost:.4f}"
    return f"${cost:.3f}"


def format_latency(latency_ms: Optional[float]) -> str:
    if latency_ms is None:
        return "-"
    return f"{latency_ms / 1000:.2f}s"


def format_price(per_million: Optional[float]) -> str:
    """Format a per-million-token price."""
    if per_million is None:
        return "?"
    if per_million == 0:
        return "free"
    if per_million < 0.001:
        return f"${per_million:.4f}/M"
    return f"${per_million:.2f}/M"


def format_usage(usage: Optional[Usage]) -> str:
    """Format token usage as 'in / out tokens', marking estimates with ~."""
    if usage is None:
        return ""
    prefix = "~" if usage.estimated else ""
    return f"{prefix}{usage.prompt_tokens:,} in / {prefix}{usage.completion_tokens:,} out"


def format_panel_stats(
    usage: Optional[Usage],
    latency_ms: Optional[int],
    cost: Optional[float],
) -> str:
    """Footer line of a panel: tokens, latency and cost.

    Returns:
        Parts joined with ' | ', empty when nothing is known yet
    """
    parts = []
    if usage is not None:
        parts.append(format_usage(usage))
    if latency_ms is not None:
        parts.append(format_latency(latency_ms))
    if cost is not None:
        parts.append(format_cost(cost))
    return " | ".join(parts)
