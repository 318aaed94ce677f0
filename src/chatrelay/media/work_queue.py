"""Bounded work queue for media jobs, consumed by a fixed thread pool.

Enqueue is idempotent per message id while a job is queued or running, so a
message never has two acquisitions in flight. When the queue is full the job
is refused (the media stays pending) instead of blocking the webhook
response.
"""

import queue
import threading
import time
from collections.abc import Callable
from typing import Any

from chatrelay.observability.correlation import (
    bind_correlation_id,
    new_correlation_id,
    unbind_correlation_id,
)
from chatrelay.observability.logging import get_logger
from chatrelay.observability.redaction import safe_log_context

from .pipeline import MediaJob

logger = get_logger(__name__)

_STOP = object()


class MediaWorkQueue:
    """Fixed pool of worker threads draining a bounded queue.

    Workers start lazily on the first submit, so apps that never receive
    media never spawn threads.
    """

    def __init__(
        self,
        handler: Callable[[MediaJob], Any],
        *,
        workers: int = 2,
        maxsize: int = 100,
    ) -> None:
        self._handler = handler
        self._workers = max(1, workers)
        self._queue: queue.Queue = queue.Queue(maxsize=max(1, maxsize))
        self._lock = threading.Lock()
        self._in_flight: set[str] = set()
        self._threads: list[threading.Thread] = []
        self._closed = False

    def _start_locked(self) -> None:
        if self._threads:
            return
        for index in range(self._workers):
            thread = threading.Thread(
                target=self._run, name=f"media-worker-{index}", daemon=True
            )
            thread.start()
            self._threads.append(thread)

    def submit(self, job: MediaJob) -> bool:
        """Queue a job.

        Returns:
            True if queued. False if the queue is closed or full, or a job
            for the same message is already queued or running.
        """
        log_ctx = safe_log_context(message_id=job.message_id)
        with self._lock:
            if self._closed:
                logger.warning("media queue closed, job refused", extra={"extra_fields": log_ctx})
                return False
            if job.message_id in self._in_flight:
                logger.info("media job already in flight", extra={"extra_fields": log_ctx})
                return False
            self._in_flight.add(job.message_id)
            self._start_locked()

        try:
            self._queue.put_nowait(job)
        except queue.Full:
            with self._lock:
                self._in_flight.discard(job.message_id)
            logger.warning("media queue full, job refused", extra={"extra_fields": log_ctx})
            return False
        return True

    def is_in_flight(self, message_id: str) -> bool:
        with self._lock:
            return message_id in self._in_flight

    def _run(self) -> None:
        while True:
            job = self._queue.get()
            try:
                if job is _STOP:
                    return
                self._process(job)
            finally:
                self._queue.task_done()

    def _process(self, job: MediaJob) -> None:
        token = bind_correlation_id(job.correlation_id or new_correlation_id())
        try:
            self._handler(job)
        except Exception:
            logger.exception(
                "media job crashed",
                extra={"extra_fields": safe_log_context(message_id=job.message_id)},
            )
        finally:
            unbind_correlation_id(token)
            with self._lock:
                self._in_flight.discard(job.message_id)

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until every queued job has finished. False on timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._queue.all_tasks_done:
            while self._queue.unfinished_tasks:
                if deadline is None:
                    self._queue.all_tasks_done.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._queue.all_tasks_done.wait(remaining)
        return True

    def shutdown(self, timeout: float = 10.0) -> None:
        """Refuse new jobs, drain queued ones, then stop the workers."""
        with self._lock:
            self._closed = True
            threads = list(self._threads)
        if not threads:
            return

        if not self.wait_idle(timeout):
            logger.warning(
                "media queue drain timed out",
                extra={"extra_fields": {"pending": self._queue.qsize()}},
            )
        for _ in threads:
            try:
                self._queue.put(_STOP, timeout=1.0)
            except queue.Full:
                break
        for thread in threads:
            thread.join(timeout=1.0)
        logger.info("media queue stopped")
