"""
Timer Wheel

One heap of (fire_at, key) entries polled by a single loop thread,
instead of one OS timer per dose. Cancelling a key is a dict removal;
stale heap entries are skipped lazily when they surface.
"""

import heapq
import itertools
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from pillwatch.logger import get_logger


@dataclass
class Timer:
    key: str
    fire_at: datetime
    callback: Callable[[], None]
    interval: Optional[timedelta] = None
    token: int = 0


@dataclass(order=True)
class _Entry:
    fire_at: datetime
    seq: int
    key: str = field(compare=False)
    token: int = field(compare=False)


class TimerWheel:
    """Keyed one-shot and periodic timers ordered by fire time."""

    def __init__(self, config=None):
        self.logger = get_logger(__name__, config)
        self._lock = threading.RLock()
        self._heap: List[_Entry] = []
        self._timers: Dict[str, Timer] = {}
        self._seq = itertools.count()

    def schedule(self, key: str, fire_at: datetime, callback: Callable[[], None],
                 interval: Optional[timedelta] = None) -> Timer:
        """Arm a timer, replacing any existing timer with the same key."""
        with self._lock:
            token = next(self._seq)
            timer = Timer(key, fire_at, callback, interval, token)
            self._timers[key] = timer
            heapq.heappush(self._heap, _Entry(fire_at, token, key, token))
            return timer

    def cancel(self, key: str) -> bool:
        with self._lock:
            return self._timers.pop(key, None) is not None

    def cancel_prefix(self, prefix: str) -> int:
        with self._lock:
            keys = [k for k in self._timers if k.startswith(prefix)]
            for k in keys:
                del self._timers[k]
            return len(keys)

    def is_active(self, key: str) -> bool:
        with self._lock:
            return key in self._timers

    def get(self, key: str) -> Optional[Timer]:
        with self._lock:
            return self._timers.get(key)

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            return sorted(k for k in self._timers if k.startswith(prefix))

    def __len__(self):
        with self._lock:
            return len(self._timers)

    def next_fire_time(self) -> Optional[datetime]:
        with self._lock:
            self._discard_stale()
            return self._heap[0].fire_at if self._heap else None

    def _discard_stale(self):
        while self._heap:
            top = self._heap[0]
            timer = self._timers.get(top.key)
            if timer is not None and timer.token == top.token:
                return
            heapq.heappop(self._heap)

    def _pop_due(self, now: datetime) -> Optional[Timer]:
        with self._lock:
            self._discard_stale()
            if not self._heap or self._heap[0].fire_at > now:
                return None
            entry = heapq.heappop(self._heap)
            timer = self._timers[entry.key]

            if timer.interval:
                # Skip beats missed while suspended instead of replaying them
                next_fire = timer.fire_at + timer.interval
                while next_fire <= now:
                    next_fire += timer.interval
                timer.fire_at = next_fire
                timer.token = next(self._seq)
                heapq.heappush(self._heap, _Entry(next_fire, timer.token, timer.key, timer.token))
            else:
                del self._timers[entry.key]
            return timer

    def run_due(self, now: datetime) -> int:
        """Fire every timer due at `now`. Returns the number fired.

        Callbacks run outside the lock, so they may schedule or cancel
        timers (including their own).
        """
        fired = 0
        while True:
            timer = self._pop_due(now)
            if timer is None:
                return fired
            fired += 1
            try:
                timer.callback()
            except Exception as e:
                self.logger.error(f"Timer {timer.key} failed: {e}")


class TimerLoop:
    """Background thread polling a TimerWheel (and any extra hooks)."""

    def __init__(self, wheel: TimerWheel, clock: Callable[[], datetime],
                 poll_interval: float = 5.0, config=None,
                 hooks: Optional[List[Callable[[datetime], None]]] = None):
        self.wheel = wheel
        self.clock = clock
        self.poll_interval = poll_interval
        self.hooks = hooks or []
        self.logger = get_logger(__name__, config)
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True,
                                        name="pillwatch-timers")
        self._thread.start()
        self.logger.info("Timer loop started")

    def stop(self):
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=10)
            self._thread = None
        self.logger.info("Timer loop stopped")

    def poll_once(self):
        now = self.clock()
        self.wheel.run_due(now)
        for hook in self.hooks:
            try:
                hook(now)
            except Exception as e:
                self.logger.error(f"Timer loop hook error: {e}")

    def _loop(self):
        while not self._stop.is_set():
            try:
                self.poll_once()
            except Exception as e:
                self.logger.error(f"Timer loop error: {e}")
            self._stop.wait(self.poll_interval)
