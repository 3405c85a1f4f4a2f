"""Rebuild panel histories from a stored conversation.

User messages are shared by all panels; assistant messages carry the index
of the panel that produced them. The join between the two is positional:
the i-th reply of a panel answers the i-th user turn. That holds as long as
every turn was dispatched to the same panels, which is the normal case but
is not guaranteed if a panel's model changed mid-conversation.
"""

from collections import Counter
from typing import Collection, Dict, List, Optional, Sequence, Tuple

from ..llm.base_adapter import ChatMessage
from ..storage import MessageRecord


def partition_messages(
    messages: Sequence[MessageRecord],
    panel_count: int,
) -> Tuple[List[str], Dict[int, List[str]]]:
    """Split stored messages into shared user turns and per-panel replies.

    Args:
        messages: Stored messages in creation order
        panel_count: Number of panels

    Returns:
        (user turn contents, {panel index: reply contents})
    """
    user_turns: List[str] = []
    replies: Dict[int, List[str]] = {index: [] for index in range(panel_count)}

    for message in messages:
        if message.role == "user":
            user_turns.append(message.content)
        elif message.role == "assistant":
            index = message.panel_index
            if index is None or not 0 <= index < panel_count:
                continue
            replies[index].append(message.content)

    return user_turns, replies


def rebuild_panel_history(user_turns: List[str], replies: List[str]) -> List[ChatMessage]:
    """Interleave user turns with one panel's replies by position.

    A panel with fewer replies than turns (e.g. a failed exchange) gets no
    assistant entry for the missing positions.
    """
    history: List[ChatMessage] = []
    for position, turn in enumerate(user_turns):
        history.append(ChatMessage(role="user", content=turn))
        if position < len(replies):
            history.append(ChatMessage(role="assistant", content=replies[position]))
    return history


def rebuild_panel_histories(
    messages: Sequence[MessageRecord],
    panel_count: int,
    dispatched_panels: Optional[Collection[int]] = None,
) -> List[List[ChatMessage]]:
    """Rebuild every panel's message history.

    Args:
        messages: Stored messages in creation order
        panel_count: Number of panels
        dispatched_panels: Indices of the panels the conversation used;
            other panels stay empty. Defaults to every panel that has at
            least one reply.

    Returns:
        One history per panel
    """
    user_turns, replies = partition_messages(messages, panel_count)

    histories = []
    for index in range(panel_count):
        used = bool(replies[index])
        if dispatched_panels is not None and index in dispatched_panels:
            used = True
        histories.append(rebuild_panel_history(user_turns, replies[index]) if used else [])
    return histories


def restore_panel_models(
    messages: Sequence[MessageRecord],
    conversation_models: Sequence[str],
    panel_count: int,
) -> List[Optional[str]]:
    """Work out which model each panel showed in a stored conversation.

    The model of a panel's latest reply wins. A panel without replies
    takes the entry at its position in the conversation's model list,
    unless the panels that did reply already account for every stored
    copy of that model.
    """
    models: List[Optional[str]] = [None] * panel_count
    for message in messages:
        index = message.panel_index
        if message.role != "assistant" or index is None or not 0 <= index < panel_count:
            continue
        if message.model_id:
            models[index] = message.model_id

    unclaimed = Counter(m for m in conversation_models if m)
    unclaimed.subtract(m for m in models if m)
    for index, model_id in enumerate(list(conversation_models)[:panel_count]):
        if models[index] is None and model_id and unclaimed[model_id] > 0:
            models[index] = model_id
            unclaimed[model_id] -= 1
    return models
