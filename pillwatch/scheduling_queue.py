"""
Scheduling Queue

Serializes scheduling work per medication. A job submitted for a key that
already has a job queued or running is dropped, not queued behind it:
the in-flight job is about to produce a fresh generation of alerts
anyway, and a second one would race it into duplicates.

Until start() is called, jobs run inline on the caller's thread.
"""

import queue
import threading
from typing import Callable, Optional, Set

from pillwatch.logger import get_logger


class SchedulingQueue:
    """Single worker thread consuming keyed jobs from a queue.Queue."""

    def __init__(self, config=None):
        self.logger = get_logger(__name__, config)
        self._lock = threading.Lock()
        self._in_flight: Set[str] = set()
        self._queue: "queue.Queue" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._running = False

    def claim(self, key: str) -> bool:
        """Mark key in flight; False if it already is."""
        with self._lock:
            if key in self._in_flight:
                return False
            self._in_flight.add(key)
            return True

    def release(self, key: str):
        with self._lock:
            self._in_flight.discard(key)

    def is_in_flight(self, key: str) -> bool:
        with self._lock:
            return key in self._in_flight

    def submit(self, key: str, job: Callable[[], None]) -> bool:
        """Run or enqueue job for key. False if dropped as a duplicate."""
        if not self.claim(key):
            self.logger.info(f"Already scheduling {key}, skipping")
            return False

        if not self._running:
            self._run(key, job)
        else:
            self._queue.put((key, job))
        return True

    def _run(self, key: str, job: Callable[[], None]):
        try:
            job()
        except Exception as e:
            self.logger.error(f"Scheduling job for {key} failed: {e}")
        finally:
            self.release(key)

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def start(self):
        if self._running:
            return
        self._running = True
        self._thread = threading.Thread(target=self._worker, daemon=True,
                                        name="pillwatch-scheduling")
        self._thread.start()

    def stop(self, timeout: float = 10.0):
        if not self._running:
            return
        self._running = False
        self._queue.put(None)
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None

    def join(self):
        """Block until every queued job has finished."""
        self._queue.join()

    def _worker(self):
        while True:
            item = self._queue.get()
            try:
                if item is None:
                    return
                key, job = item
                self._run(key, job)
            finally:
                self._queue.task_done()
