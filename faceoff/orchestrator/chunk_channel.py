"""Addressed event channel between running streams and their listeners.

Every stream publishes to the same channel; each event carries its stream
id so listeners route it themselves. Delivery is synchronous and in publish
order, which keeps the events of one stream in receipt order.
"""

import logging
from typing import Callable, List

from ..llm.base_adapter import ChunkEvent


logger = logging.getLogger(__name__)

ChunkListener = Callable[[ChunkEvent], None]


class ChunkChannel:
    """Fan-out of chunk events to subscribed listeners."""

    def __init__(self) -> None:
        self._listeners: List[ChunkListener] = []

    def subscribe(self, listener: ChunkListener) -> None:
        """Register a listener; listeners are called in subscription order."""
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: ChunkListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def publish(self, event: ChunkEvent) -> None:
        """Deliver an event to every listener.

        A failing listener is logged and does not keep the event from the
        remaining listeners.
        """
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(
                    "Chunk listener %r failed for stream %s", listener, event.stream_id
                )

    def __len__(self) -> int:
        return len(self._listeners)
