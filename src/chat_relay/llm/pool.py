"""Bounded worker pool for blocking HTTP calls.

A small thread pool with a core size, a hard maximum and a bounded queue.
A submission starts a new worker when every existing worker is busy and the
maximum is not reached; otherwise it waits in the queue. When the queue is
full the caller blocks for at most ``submit_timeout`` seconds and then gets a
``PoolSaturatedError``. Work is never dropped silently.

Workers above the core size exit after ``keep_alive`` idle seconds.
"""

from __future__ import annotations

import itertools
import logging
import queue
import threading
from typing import Callable

from chat_relay.exceptions import PoolSaturatedError, RelayError

_logger = logging.getLogger(__name__)

Task = Callable[[], None]


class WorkerPool:
    """Thread pool with core/max workers and a bounded FIFO queue."""

    def __init__(
        self,
        name: str,
        core_workers: int = 2,
        max_workers: int = 10,
        keep_alive: float = 60.0,
        queue_capacity: int = 100,
        submit_timeout: float = 1.0,
    ):
        if max_workers < 1 or core_workers < 0 or core_workers > max_workers:
            raise ValueError(
                f"Invalid pool size: core={core_workers}, max={max_workers}")
        self.name = name
        self.core_workers = core_workers
        self.max_workers = max_workers
        self.keep_alive = keep_alive
        self.queue_capacity = queue_capacity
        self.submit_timeout = submit_timeout

        self._queue: queue.Queue[Task | None] = queue.Queue(maxsize=queue_capacity)
        self._lock = threading.Lock()
        self._threads: set[threading.Thread] = set()
        self._idle = 0
        self._closed = False
        self._counter = itertools.count(1)

    # -- introspection --------------------------------------------------------

    @property
    def worker_count(self) -> int:
        with self._lock:
            return len(self._threads)

    @property
    def idle_count(self) -> int:
        with self._lock:
            return self._idle

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    # -- submission -----------------------------------------------------------

    def submit(self, task: Task) -> None:
        """Run *task* on a worker thread.

        Raises PoolSaturatedError if the queue stays full for
        ``submit_timeout`` seconds, RelayError if the pool is shut down.
        """
        with self._lock:
            if self._closed:
                raise RelayError(f"Worker pool '{self.name}' is shut down")
            if self._idle == 0 and len(self._threads) < self.max_workers:
                self._spawn(task)
                return
            try:
                # under the lock so an idle worker cannot retire past it
                self._queue.put_nowait(task)
                return
            except queue.Full:
                pass

        try:
            self._queue.put(task, timeout=self.submit_timeout)
        except queue.Full:
            _logger.warning("Pool %s saturated: %d workers busy, %d queued",
                            self.name, self.worker_count, self.pending)
            raise PoolSaturatedError(self.name, self.queue_capacity) from None

    def _spawn(self, first: Task) -> None:
        # caller holds self._lock
        thread = threading.Thread(
            target=self._run, args=(first,), daemon=True,
            name=f"{self.name}-worker-{next(self._counter)}")
        self._threads.add(thread)
        thread.start()

    # -- worker loop ----------------------------------------------------------

    def _run(self, first: Task) -> None:
        """Worker loop: run tasks until shut down or idle past keep-alive."""
        task: Task | None = first
        me = threading.current_thread()
        while True:
            if task is not None:
                self._run_task(task)

            with self._lock:
                self._idle += 1
            try:
                task = self._queue.get(timeout=self.keep_alive)
            except queue.Empty:
                with self._lock:
                    self._idle -= 1
                    retire = len(self._threads) > self.core_workers or self._closed
                    if retire and self._queue.empty():
                        self._threads.discard(me)
                        _logger.debug("Worker %s retired after idling", me.name)
                        return
                task = None
                continue

            with self._lock:
                self._idle -= 1
                if task is None:
                    # shutdown sentinel
                    self._threads.discard(me)
                    return

    def _run_task(self, task: Task) -> None:
        try:
            task()
        except Exception:
            _logger.exception("Unhandled error in pool %s task", self.name)

    # -- shutdown -------------------------------------------------------------

    def shutdown(self, wait: bool = True, timeout: float = 5.0) -> bool:
        """Stop accepting work and let workers exit after the queued tasks.

        Returns True if every worker stopped (always True with ``wait=False``).
        """
        with self._lock:
            if self._closed:
                return True
            self._closed = True
            threads = list(self._threads)

        for _ in threads:
            try:
                if wait:
                    self._queue.put(None, timeout=timeout)
                else:
                    self._queue.put_nowait(None)
            except queue.Full:
                _logger.warning("Pool %s: queue full during shutdown", self.name)
                break

        if not wait:
            return True
        stopped = True
        for thread in threads:
            thread.join(timeout=timeout)
            if thread.is_alive():
                _logger.warning("Worker %s did not stop within %.1fs",
                                thread.name, timeout)
                stopped = False
        return stopped
