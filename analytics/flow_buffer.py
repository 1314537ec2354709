from collections import deque
from typing import Deque, List, Optional, Tuple

from ingest.flow_types import FlowEvent


DEFAULT_CAPACITY = 100


class FlowBuffer:
    """Newest-first, hard-capped store of recent flow events.

    Ordering is by push (arrival), never by the event's embedded timestamp.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        capacity = int(capacity)
        if capacity <= 0:
            raise ValueError(f"FlowBuffer capacity must be positive, got {capacity}")
        self.capacity = capacity
        self._events: Deque[FlowEvent] = deque(maxlen=capacity)
        self.total_pushed = 0

    def push(self, event: FlowEvent) -> Optional[FlowEvent]:
        """Prepend ``event``; return the evicted tail event, if any."""
        evicted = self._events[-1] if len(self._events) == self.capacity else None
        self._events.appendleft(event)
        self.total_pushed += 1
        return evicted

    def size(self) -> int:
        return len(self._events)

    def __len__(self) -> int:
        return len(self._events)

    def snapshot(self) -> Tuple[FlowEvent, ...]:
        return tuple(self._events)

    def clear(self):
        self._events.clear()

    @staticmethod
    def key_for(event: FlowEvent, index: int) -> str:
        if event.timestamp:
            return str(event.timestamp)
        instrument = event.conid or index
        return f"{event.symbol}-{instrument}-{index}"

    def keyed(self) -> List[Tuple[str, FlowEvent]]:
        return [(self.key_for(event, i), event) for i, event in enumerate(self._events)]
