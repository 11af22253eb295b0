"""Tests for the local task queue."""
from __future__ import annotations

from taskagent.core.models import Task
from taskagent.core.task_queue import TaskQueue


def _task(task_id: str, priority: int = 0) -> Task:
    return Task(id=task_id, domain="demo", kind="echo", priority=priority)


def test_duplicate_enqueue_keeps_single_entry() -> None:
    queue = TaskQueue()
    assert queue.enqueue(_task("t1")) is True
    assert queue.enqueue(_task("t1")) is False
    assert queue.size() == 1


def test_duplicate_of_in_flight_task_is_ignored() -> None:
    queue = TaskQueue()
    queue.enqueue(_task("t1"))
    entry = queue.dequeue_next()
    assert entry is not None and entry.started_at is not None
    assert queue.enqueue(_task("t1")) is False

    queue.complete("t1")
    assert queue.enqueue(_task("t1")) is True


def test_priority_then_fifo_order() -> None:
    queue = TaskQueue(max_in_flight=10)
    for task in (_task("a"), _task("b", priority=5), _task("c"), _task("d", priority=5)):
        queue.enqueue(task)
    assert queue.pending_ids() == ["b", "d", "a", "c"]
    order = []
    while (entry := queue.dequeue_next()) is not None:
        order.append(entry.task_id)
    assert order == ["b", "d", "a", "c"]


def test_dequeue_respects_in_flight_ceiling() -> None:
    queue = TaskQueue(max_in_flight=1)
    queue.enqueue(_task("t1"))
    queue.enqueue(_task("t2"))
    assert queue.dequeue_next().task_id == "t1"
    assert queue.dequeue_next() is None
    assert queue.in_flight_count() == 1

    queue.complete("t1")
    assert queue.dequeue_next().task_id == "t2"


def test_discard_skips_stale_heap_slot() -> None:
    queue = TaskQueue(max_in_flight=2)
    queue.enqueue(_task("t1"))
    queue.enqueue(_task("t2"))
    queue.discard("t1")
    assert queue.dequeue_next().task_id == "t2"
    assert queue.dequeue_next() is None


def test_drain_pending_returns_dispatch_order() -> None:
    queue = TaskQueue()
    queue.enqueue(_task("low"))
    queue.enqueue(_task("high", priority=1))
    assert [task.id for task in queue.drain_pending()] == ["high", "low"]
    assert len(queue) == 0
