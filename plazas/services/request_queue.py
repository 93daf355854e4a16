"""Priority-ordered queue of pending allocation requests."""

from __future__ import annotations

import heapq
import itertools
from threading import Lock
from typing import Iterable, Iterator, Optional

from plazas.domain.models import AllocationRequest


class RequestQueue:
    """Min-heap keyed by priority key (lower key is served first).

    Keys are unique by construction; the insertion counter only keeps the heap
    from ever comparing two request objects when a duplicate slips through.
    """

    def __init__(self) -> None:
        self._heap: list[tuple[int, int, AllocationRequest]] = []
        self._counter = itertools.count()
        self._lock = Lock()

    @classmethod
    def load(cls, requests: Iterable[AllocationRequest]) -> "RequestQueue":
        queue = cls()
        queue._heap = [
            (request.priority_key, next(queue._counter), request) for request in requests
        ]
        heapq.heapify(queue._heap)
        return queue

    def enqueue(self, request: AllocationRequest) -> None:
        with self._lock:
            heapq.heappush(self._heap, (request.priority_key, next(self._counter), request))

    def pop(self) -> Optional[AllocationRequest]:
        with self._lock:
            if not self._heap:
                return None
            return heapq.heappop(self._heap)[2]

    def peek(self) -> Optional[AllocationRequest]:
        with self._lock:
            return self._heap[0][2] if self._heap else None

    def drain(self) -> Iterator[AllocationRequest]:
        """Yield requests in priority order, including ones enqueued mid-drain."""
        while True:
            request = self.pop()
            if request is None:
                return
            yield request

    def __len__(self) -> int:
        with self._lock:
            return len(self._heap)
