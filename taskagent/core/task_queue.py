"""Deduplicating priority queue of pending work local to one agent."""
from __future__ import annotations

import heapq
import itertools
import time
from typing import Callable, Dict, List, Optional, Tuple

from .models import QueueEntry, Task


class TaskQueue:
    """Priority-then-FIFO queue with an in-flight ceiling.

    A task id is tracked from ``enqueue`` until ``complete``: while pending or
    in flight, enqueuing the same id again is a no-op.
    """

    def __init__(self, *, max_in_flight: int = 1, clock: Callable[[], float] = time.monotonic) -> None:
        if max_in_flight < 1:
            raise ValueError("max_in_flight must be >= 1")
        self.max_in_flight = max_in_flight
        self._clock = clock
        self._heap: List[Tuple[int, int, str]] = []
        self._pending: Dict[str, QueueEntry] = {}
        self._in_flight: Dict[str, QueueEntry] = {}
        self._sequence = itertools.count()

    def enqueue(self, task: Task) -> bool:
        """Add a task; returns False if its id is already pending or in flight."""
        if task.id in self._pending or task.id in self._in_flight:
            return False
        entry = QueueEntry(task=task, sequence=next(self._sequence), enqueued_at=self._clock())
        self._pending[task.id] = entry
        heapq.heappush(self._heap, (-task.priority, entry.sequence, task.id))
        return True

    def dequeue_next(self) -> Optional[QueueEntry]:
        """Pop the next eligible entry, or None if empty or at the ceiling."""
        if len(self._in_flight) >= self.max_in_flight:
            return None
        while self._heap:
            _, sequence, task_id = heapq.heappop(self._heap)
            entry = self._pending.get(task_id)
            if entry is None or entry.sequence != sequence:
                # Stale heap slot left by discard().
                continue
            del self._pending[task_id]
            entry.started_at = self._clock()
            self._in_flight[task_id] = entry
            return entry
        return None

    def complete(self, task_id: str) -> Optional[QueueEntry]:
        """Release an in-flight entry so its id may be enqueued again."""
        return self._in_flight.pop(task_id, None)

    def discard(self, task_id: str) -> Optional[QueueEntry]:
        """Drop a pending entry without dispatching it."""
        return self._pending.pop(task_id, None)

    def contains(self, task_id: str) -> bool:
        return task_id in self._pending or task_id in self._in_flight

    def size(self) -> int:
        return len(self._pending)

    def in_flight_count(self) -> int:
        return len(self._in_flight)

    def pending_ids(self) -> List[str]:
        ordered = sorted(self._pending.values(), key=lambda e: (-e.task.priority, e.sequence))
        return [entry.task_id for entry in ordered]

    def drain_pending(self) -> List[Task]:
        """Remove and return every pending task in dispatch order."""
        tasks = [self._pending[task_id].task for task_id in self.pending_ids()]
        self._pending.clear()
        self._heap.clear()
        return tasks

    def __len__(self) -> int:
        return self.size()
