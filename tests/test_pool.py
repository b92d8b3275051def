"""Tests for the bounded worker pool."""

from __future__ import annotations

import queue
import threading
import time

import pytest

from chat_relay.exceptions import PoolSaturatedError, RelayError
from chat_relay.llm.pool import WorkerPool


def _wait_until(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class _TimeoutOnceQueue(queue.Queue):
    """Runs *hook* inside the first get(), then reports a keep-alive timeout."""

    def __init__(self, maxsize, hook):
        super().__init__(maxsize)
        self._hook = hook

    def get(self, block=True, timeout=None):
        hook, self._hook = self._hook, None
        if hook is not None:
            hook()
            raise queue.Empty
        return super().get(block, timeout)


class TestWorkerPool:
    def test_runs_task(self):
        pool = WorkerPool("t")
        ran = threading.Event()
        pool.submit(ran.set)
        assert ran.wait(2)
        pool.shutdown()

    def test_grows_to_max_then_queues(self):
        pool = WorkerPool("t", core_workers=1, max_workers=2, queue_capacity=5)
        gate = threading.Event()
        try:
            for _ in range(3):
                pool.submit(gate.wait)
            assert pool.worker_count == 2
            assert pool.pending == 1
        finally:
            gate.set()
            pool.shutdown()

    def test_saturation_raises(self):
        pool = WorkerPool("busy", core_workers=1, max_workers=1,
                          queue_capacity=1, submit_timeout=0.05)
        gate = threading.Event()
        try:
            pool.submit(gate.wait)
            pool.submit(gate.wait)
            with pytest.raises(PoolSaturatedError) as exc_info:
                pool.submit(gate.wait)
            assert exc_info.value.pool_name == "busy"
            assert exc_info.value.capacity == 1
            assert "saturated" in str(exc_info.value)
        finally:
            gate.set()
            pool.shutdown()

    def test_failing_task_does_not_kill_worker(self):
        pool = WorkerPool("t", core_workers=1, max_workers=1)
        ran = threading.Event()

        def boom():
            raise RuntimeError("task failed")

        pool.submit(boom)
        pool.submit(ran.set)
        assert ran.wait(2)
        pool.shutdown()

    def test_fifo_order_on_single_worker(self):
        pool = WorkerPool("t", core_workers=1, max_workers=1)
        gate = threading.Event()
        order: list[int] = []
        pool.submit(gate.wait)
        for i in range(5):
            pool.submit(lambda i=i: order.append(i))
        gate.set()
        assert _wait_until(lambda: len(order) == 5)
        assert order == [0, 1, 2, 3, 4]
        pool.shutdown()

    def test_idle_workers_above_core_retire(self):
        pool = WorkerPool("t", core_workers=0, max_workers=2, keep_alive=0.05)
        ran = threading.Event()
        pool.submit(ran.set)
        assert ran.wait(2)
        assert _wait_until(lambda: pool.worker_count == 0)
        pool.shutdown()

    def test_task_queued_as_last_worker_times_out_still_runs(self):
        pool = WorkerPool("t", core_workers=0, max_workers=1, keep_alive=0.05)
        late = threading.Event()
        pool._queue = _TimeoutOnceQueue(10, lambda: pool.submit(late.set))
        first = threading.Event()
        pool.submit(first.set)
        assert first.wait(2)
        assert late.wait(2)
        assert _wait_until(lambda: pool.worker_count == 0)
        pool.shutdown()

    def test_submit_after_shutdown(self):
        pool = WorkerPool("t")
        assert pool.shutdown()
        assert pool.closed
        with pytest.raises(RelayError):
            pool.submit(lambda: None)

    def test_shutdown_stops_workers(self):
        pool = WorkerPool("t", core_workers=2, max_workers=2)
        done = threading.Event()
        pool.submit(done.set)
        assert done.wait(2)
        assert pool.shutdown(timeout=2)
        assert pool.worker_count == 0

    def test_invalid_sizes(self):
        with pytest.raises(ValueError):
            WorkerPool("t", core_workers=3, max_workers=2)
        with pytest.raises(ValueError):
            WorkerPool("t", max_workers=0)
