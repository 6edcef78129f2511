"""
Background Task Worker
======================
Fire-and-forget execution of the follow-up steps of a quiz write: orphaned
image cleanup and backlink reconciliation.

Architecture:
    - A bounded queue feeds a small pool of daemon worker threads
    - Every task failure is logged here; nothing propagates to the request
    - When the queue is full the task runs in the caller's thread instead of
      being dropped (backpressure)
    - ``inline=True`` runs every task synchronously (tests, CLI)

Usage:
    worker = BackgroundWorker(threads=2, max_queue=256)
    worker.start()
    worker.submit(fn, arg, description="cleanup quiz 123")
    ...
    worker.shutdown()
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

_STOP = object()


@dataclass
class _Task:
    fn: Callable[..., Any]
    args: tuple = ()
    kwargs: dict = field(default_factory=dict)
    description: str = ""


class BackgroundWorker:
    """
    Bounded background task queue with its own error logging sink.

    Holds no request state; tasks carry everything they need.
    """

    def __init__(
        self,
        threads: int = 2,
        max_queue: int = 256,
        inline: bool = False,
        name: str = "quizbank-worker",
    ):
        self.threads = max(1, threads)
        self.inline = inline
        self.name = name
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=max(1, max_queue))
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()
        self._stopped = False

    # ─── Lifecycle ────────────────────────────────────────────────────────

    def start(self):
        """Spawn the worker threads. No-op in inline mode or if running."""
        if self.inline:
            return
        with self._lock:
            if self._threads:
                return
            self._stopped = False
            for i in range(self.threads):
                thread = threading.Thread(
                    target=self._run,
                    daemon=True,
                    name=f"{self.name}-{i}",
                )
                thread.start()
                self._threads.append(thread)
        logger.info(f"Started {self.threads} background worker thread(s)")

    def shutdown(self, wait: bool = True, timeout: Optional[float] = 10.0):
        """Let queued tasks finish, then stop the threads."""
        with self._lock:
            if not self._threads or self._stopped:
                return
            self._stopped = True
            threads = list(self._threads)
            self._threads.clear()

        for _ in threads:
            self._queue.put(_STOP)
        if wait:
            for thread in threads:
                thread.join(timeout)
        logger.info("Background worker stopped")

    def pending(self) -> int:
        """Approximate number of queued, not yet started tasks."""
        return self._queue.qsize()

    def join(self):
        """Block until every queued task has been processed."""
        if not self.inline:
            self._queue.join()

    # ─── Submission ───────────────────────────────────────────────────────

    def submit(self, fn: Callable[..., Any], *args, description: str = "", **kwargs) -> Any:
        """
        Schedule ``fn(*args, **kwargs)``.

        Returns the task's result when it ran in the caller's thread (inline
        mode, worker not started, or queue full); otherwise None.
        """
        task = _Task(fn, args, kwargs, description or getattr(fn, "__name__", "task"))

        if self.inline or not self._threads:
            return self._execute(task)

        try:
            self._queue.put_nowait(task)
        except queue.Full:
            logger.warning(
                f"Background queue full, running '{task.description}' inline"
            )
            return self._execute(task)
        return None

    # ─── Internals ────────────────────────────────────────────────────────

    def _run(self):
        while True:
            task = self._queue.get()
            try:
                if task is _STOP:
                    return
                self._execute(task)
            finally:
                self._queue.task_done()

    def _execute(self, task: _Task) -> Any:
        try:
            return task.fn(*task.args, **task.kwargs)
        except Exception:
            logger.error(f"Background task '{task.description}' failed", exc_info=True)
            return None
