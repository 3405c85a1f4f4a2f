"""Export utilities for Faceoff.

Handles exporting a comparison to markdown, one section per prompt with
every panel's reply underneath.
"""

from datetime import datetime
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from ..config.settings import settings
from ..llm.base_adapter import ChatMessage
from ..orchestrator.conversation_replay import rebuild_panel_histories, restore_panel_models
from ..storage import ConversationRecord, MessageRecord


def split_turns(messages: Sequence[ChatMessage]) -> List[Tuple[str, Optional[str]]]:
    """Pair each user message with the assistant reply that follows it.

    Args:
        messages: One panel's history

    Returns:
        List of (prompt, reply or None)
    """
    turns: List[Tuple[str, Optional[str]]] = []
    for message in messages:
        if message.role == "user":
            turns.append((message.content, None))
        elif message.role == "assistant" and turns and turns[-1][1] is None:
            turns[-1] = (turns[-1][0], message.content)
    return turns


def export_to_markdown(
    panels: Sequence[Tuple[Optional[str], Sequence[ChatMessage]]],
    title: Optional[str] = None,
    conversation_id: Optional[str] = None,
) -> str:
    """Export a comparison to markdown format.

    Args:
        panels: (model_id, history) for each panel, in panel order
        title: Optional conversation title
        conversation_id: Optional conversation ID

    Returns:
        Formatted markdown string
    """
    lines = []

    # Header with metadata
    lines.append(f"# {title or 'Model Faceoff Comparison'}")
    lines.append("")
    lines.append(f"**Exported:** {datetime.now().strftime('%B %d, %Y at %I:%M %p')}")

    if conversation_id:
        lines.append(f"**Conversation ID:** {conversation_id[:8]}...")

    models_used = [model_id for model_id, history in panels if model_id and history]
    if models_used:
        lines.append(f"**Models:** {', '.join(models_used)}")

    lines.append("")
    lines.append("---")
    lines.append("")

    per_panel = [(model_id, split_turns(history)) for model_id, history in panels]
    turn_count = max((len(turns) for _, turns in per_panel), default=0)

    for position in range(turn_count):
        prompt = next(
            (turns[position][0] for _, turns in per_panel if position < len(turns)),
            "",
        )
        lines.append(f"## Prompt {position + 1}")
        lines.append("")
        lines.append(prompt)
        lines.append("")

        for index, (model_id, turns) in enumerate(per_panel):
            if position >= len(turns):
                continue
            reply = turns[position][1]
            lines.append(f"### Panel {index + 1}: {model_id or 'unknown model'}")
            lines.append("")
            lines.append(reply if reply is not None else "*No response*")
            lines.append("")

    # Footer
    lines.append("---")
    lines.append("")
    lines.append("*Exported from Model Faceoff*")

    return "\n".join(lines)


def export_conversation_markdown(
    conversation: ConversationRecord,
    messages: Sequence[MessageRecord],
    panel_count: Optional[int] = None,
) -> str:
    """Export a stored conversation without loading it into the panels.

    Args:
        conversation: The stored conversation
        messages: Its messages in creation order
        panel_count: Number of panels, defaults to settings

    Returns:
        Formatted markdown string
    """
    panel_count = panel_count or settings.panel_count
    models = restore_panel_models(messages, conversation.models, panel_count)
    dispatched = {index for index, model_id in enumerate(models) if model_id}
    histories = rebuild_panel_histories(messages, panel_count, dispatched)
    return export_to_markdown(
        list(zip(models, histories)),
        title=conversation.title,
        conversation_id=conversation.id,
    )


def generate_export_filename(prefix: str = "faceoff_export") -> str:
    """Generate a timestamped export filename."""
    timestamp = datetime.now().strftime("%Y-%m-%d_%H%M%S")
    return f"{prefix}_{timestamp}.md"


def save_markdown_export(
    filepath: Path,
    panels: Sequence[Tuple[Optional[str], Sequence[ChatMessage]]],
    title: Optional[str] = None,
    conversation_id: Optional[str] = None,
) -> None:
    """Save a comparison to a markdown file.

    Args:
        filepath: Path to save the file
        panels: (model_id, history) for each panel
        title: Optional conversation title
        conversation_id: Optional conversation ID
    """
    content = export_to_markdown(panels, title=title, conversation_id=conversation_id)
    filepath.parent.mkdir(parents=True, exist_ok=True)
    filepath.write_text(content, encoding="utf-8")
