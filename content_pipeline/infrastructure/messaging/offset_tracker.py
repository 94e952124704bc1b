import threading
from collections import deque
from typing import Deque, Dict, Iterable, Set, Tuple

TopicPartitionKey = Tuple[str, int]


class OffsetTracker:
    """
    Tracks in-flight offsets per partition when messages finish out of order.

    Offsets must be tracked in poll order. ``pop_committable`` returns, per
    partition, the offset to commit (last contiguous completed offset + 1), so
    a commit never skips a message that is still being handled.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._in_flight: Dict[TopicPartitionKey, Deque[int]] = {}
        self._done: Dict[TopicPartitionKey, Set[int]] = {}

    def track(self, key: TopicPartitionKey, offset: int) -> None:
        with self._lock:
            self._in_flight.setdefault(key, deque()).append(offset)
            self._done.setdefault(key, set())

    def complete(self, key: TopicPartitionKey, offset: int) -> None:
        with self._lock:
            if key in self._done:
                self._done[key].add(offset)

    def pop_committable(self) -> Dict[TopicPartitionKey, int]:
        committable: Dict[TopicPartitionKey, int] = {}
        with self._lock:
            for key, pending in self._in_flight.items():
                done = self._done[key]
                last = None
                while pending and pending[0] in done:
                    last = pending.popleft()
                    done.discard(last)
                if last is not None:
                    committable[key] = last + 1
        return committable

    def pending_count(self) -> int:
        with self._lock:
            return sum(len(pending) for pending in self._in_flight.values())

    def forget(self, keys: Iterable[TopicPartitionKey]) -> None:
        """Drops partitions that were revoked; their uncommitted work will be redelivered elsewhere."""
        with self._lock:
            for key in keys:
                self._in_flight.pop(key, None)
                self._done.pop(key, None)
