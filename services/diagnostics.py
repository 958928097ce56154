import os
import threading
from collections import deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional


class RingBuffer:
    """Bounded, oldest-first evicting log of recent diagnostic entries"""

    def __init__(self, max_size: int):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self._entries: Deque[Dict[str, Any]] = deque(maxlen=max_size)
        self._lock = threading.Lock()

    def append(self, entry: Dict[str, Any]):
        record = {"at": datetime.now(timezone.utc).isoformat(), **entry}
        with self._lock:
            self._entries.append(record)

    def entries(self) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._entries)

    def clear(self):
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class Diagnostics:
    """
    Process-wide registry of named ring buffers.

    Only admin introspection reads these; nothing in the booking or payment
    flow depends on what is recorded here.
    """

    CHANNELS = ("notifications", "unmatched_notifications", "gateway")

    def __init__(self, max_size: Optional[int] = None):
        if max_size is None:
            max_size = int(os.getenv("DIAGNOSTICS_MAX_ENTRIES", "200"))
        self.max_size = max_size
        self._buffers: Dict[str, RingBuffer] = {
            name: RingBuffer(max_size) for name in self.CHANNELS
        }

    def channel(self, name: str) -> RingBuffer:
        if name not in self._buffers:
            self._buffers[name] = RingBuffer(self.max_size)
        return self._buffers[name]

    def record(self, name: str, **entry: Any):
        self.channel(name).append(entry)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "maxEntries": self.max_size,
            "channels": {name: buf.entries() for name, buf in self._buffers.items()},
        }

    def reset(self):
        for buf in self._buffers.values():
            buf.clear()


diagnostics = Diagnostics()
