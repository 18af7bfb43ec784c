"""Threaded maintenance job runner with cancel support."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor
from threading import Event, Lock
from typing import Any
from uuid import UUID, uuid4

logger = logging.getLogger(__name__)


class JobRunner:
    """Wrapper around :class:`ThreadPoolExecutor` for reconciliation and resend jobs.

    Each submitted job gets its own :class:`threading.Event`. Workers receive
    it as their only argument and check ``cancel_event.is_set()`` between
    items, stopping early when set.
    """

    Worker = Callable[[Event], Any]

    def __init__(self, max_workers: int = 2):
        self.executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="handoff-job"
        )
        self._lock = Lock()
        self._events: dict[UUID, Event] = {}
        self._futures: dict[UUID, Future] = {}

    def submit(self, fn: Worker, job_id: UUID | None = None) -> UUID:
        """Submit a job for execution and return its id."""

        job_id = job_id or uuid4()
        cancel_event = Event()
        with self._lock:
            self._events[job_id] = cancel_event
            self._futures[job_id] = self.executor.submit(fn, cancel_event)
        logger.info("Submitted job %s", job_id)
        return job_id

    def cancel(self, job_id: UUID) -> bool:
        """Ask a job to stop; returns ``False`` for unknown ids."""

        with self._lock:
            event = self._events.get(job_id)
            future = self._futures.get(job_id)
        if event is None:
            return False
        event.set()
        if future is not None:
            future.cancel()
        logger.info("Cancellation requested for job %s", job_id)
        return True

    def clear(self, job_id: UUID) -> None:
        """Remove references for a finished or cancelled job."""

        with self._lock:
            self._events.pop(job_id, None)
            self._futures.pop(job_id, None)

    def get(self, job_id: UUID) -> Future | None:
        with self._lock:
            return self._futures.get(job_id)

    def list(self) -> Iterable[UUID]:
        with self._lock:
            return list(self._futures)

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            events = list(self._events.values())
        for event in events:
            event.set()
        self.executor.shutdown(wait=wait)


__all__ = ["JobRunner"]
