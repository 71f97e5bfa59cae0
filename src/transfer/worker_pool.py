from __future__ import annotations

import logging
import queue
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Generic, Iterator, TypeVar

from transfer.domain import Job, MigrationError, Result
from transfer.utils import Chronometer

logger = logging.getLogger(__name__)

T = TypeVar("T")

_CLOSED = object()


class ChannelClosedError(MigrationError):
    pass


class Channel(Generic[T]):
    """
    Unbounded FIFO shared between threads.

    The producer closes it once everything has been sent. Iterating blocks while
    the channel is empty and ends once it is closed and drained; the close marker
    is put back after being seen, so every receiver observes it.
    """

    def __init__(self) -> None:
        self._queue: queue.Queue[Any] = queue.Queue()
        self._lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, item: T) -> None:
        with self._lock:
            if self._closed:
                raise ChannelClosedError("send on closed channel")
            self._queue.put(item)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._queue.put(_CLOSED)

    def __iter__(self) -> Iterator[T]:
        while True:
            item = self._queue.get()
            if item is _CLOSED:
                self._queue.put(_CLOSED)
                return
            yield item


class WorkerPool:
    """
    Fixed number of threads draining a job channel into a result channel.

    Worker lifecycle: Idle -> Processing -> Publishing -> Idle, and Idle -> Exited
    once the job channel is closed and drained or the pool is cancelled.
    The result channel is closed only after every worker has exited.

    A failing unit of work yields a failed Result; nothing is retried. With
    stop_on_failure the first failure cancels the pool: workers finish the job in
    hand and take no new ones.
    """

    def __init__(self, work: Callable[[Job], bool], worker_count: int, *, stop_on_failure: bool = True) -> None:
        if worker_count <= 0:
            raise ValueError("worker_count must be positive")
        self._work = work
        self.worker_count = worker_count
        self.stop_on_failure = stop_on_failure
        self._cancelled = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        if not self._cancelled.is_set():
            logger.warning("Worker pool cancelled; no new jobs will be started.")
        self._cancelled.set()

    def run(self, jobs: Channel[Job], results: Channel[Result]) -> None:
        try:
            with ThreadPoolExecutor(max_workers=self.worker_count, thread_name_prefix="worker") as executor:
                workers = [
                    executor.submit(self._worker_loop, worker_id, jobs, results)
                    for worker_id in range(self.worker_count)
                ]
                for worker in workers:
                    worker.result()
        finally:
            results.close()

    def _worker_loop(self, worker_id: int, jobs: Channel[Job], results: Channel[Result]) -> None:
        for job in jobs:
            if self._cancelled.is_set():
                logger.debug("Worker %s exiting on cancellation, leaving job %s", worker_id, job.id)
                return

            logger.debug("Worker %s processing job %s (%s)", worker_id, job.id, job.file_path.name)
            chronometer = Chronometer()
            try:
                loaded = self._work(job)
            except Exception as e:
                job.exec_time = chronometer.elapsed()
                logger.error("Job %s (%s) failed after %.2fs: %s", job.id, job.file_path.name, job.exec_time, e)
                results.send(Result(job=job, error=e))
                if self.stop_on_failure:
                    self.cancel()
                continue

            job.exec_time = chronometer.elapsed()
            results.send(Result(job=job, skipped=not loaded))

        logger.debug("Worker %s exiting: job channel closed and drained", worker_id)
