import threading
from typing import List, Optional, Tuple
from engine.model import Event

class EventLog:
    """Append-only log of poller outcomes, read back by offset."""

    def __init__(self, max_events: Optional[int] = None):
        self._log: List[Event] = []
        self._dropped = 0  # events trimmed from the head when bounded
        self._max_events = max_events
        self._lock = threading.Lock()

    def append(self, evt: Event) -> int:
        """Append one event and return its offset."""
        start, _ = self.append_many([evt])
        return start

    def append_many(self, evts: List[Event]) -> Tuple[int, int]:
        """Append events and return (start_offset, end_offset)."""
        with self._lock:
            start = self._dropped + len(self._log)
            self._log.extend(evts)
            end = self._dropped + len(self._log) - 1
            if self._max_events is not None and len(self._log) > self._max_events:
                overflow = len(self._log) - self._max_events
                del self._log[:overflow]
                self._dropped += overflow
            return start, end

    def since(self, offset: int, limit: int = 1000) -> Tuple[List[Event], int]:
        """Return events starting from offset, up to limit, and the next offset."""
        with self._lock:
            offset = max(self._dropped, offset)
            local = offset - self._dropped
            chunk = self._log[local: local + limit]
            return list(chunk), offset + len(chunk)

    def __len__(self) -> int:
        with self._lock:
            return self._dropped + len(self._log)
