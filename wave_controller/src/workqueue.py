from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable, Hashable

from wave_controller.src.metrics import METRICS


class WorkQueue:
    """De-duplicating work queue that serialises processing per key.

    Semantics follow the usual controller work queue:

    * A key added several times before a worker picks it up is processed
      once.
    * A key handed out by :meth:`get` is never handed to a second worker
      until :meth:`done` is called for it.  Adds that arrive meanwhile are
      remembered and the key is queued again on ``done``.
    * :meth:`add_rate_limited` delays a key by ``min(max_delay, 2 ** (n - 1))``
      seconds for its ``n``-th consecutive failure; :meth:`forget` resets
      the counter after a success.
    """

    def __init__(
        self,
        max_delay_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_delay_seconds = max_delay_seconds
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._waiting: dict[Hashable, float] = {}
        self._failures: dict[Hashable, int] = {}
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def _update_depth(self) -> None:
        METRICS.queue_depth.set(len(self._queue) + len(self._waiting))

    def _add_locked(self, key: Hashable) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._cond.notify()

    def add(self, key: Hashable) -> None:
        with self._cond:
            self._add_locked(key)
            self._update_depth()

    def add_after(self, key: Hashable, delay_seconds: float) -> None:
        if delay_seconds <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            due_at = self._clock() + delay_seconds
            existing = self._waiting.get(key)
            if existing is None or due_at < existing:
                self._waiting[key] = due_at
            self._update_depth()
            self._cond.notify_all()

    def add_rate_limited(self, key: Hashable) -> float:
        """Requeue *key* after its backoff delay and return that delay."""
        with self._cond:
            failures = self._failures.get(key, 0) + 1
            self._failures[key] = failures
        delay_seconds = min(self.max_delay_seconds, float(2 ** (failures - 1)))
        self.add_after(key, delay_seconds)
        return delay_seconds

    def forget(self, key: Hashable) -> None:
        with self._cond:
            self._failures.pop(key, None)

    def num_requeues(self, key: Hashable) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    def _promote_due_locked(self) -> float | None:
        """Move due delayed keys onto the queue; return seconds until the next one."""
        if not self._waiting:
            return None
        now = self._clock()
        for key, due_at in list(self._waiting.items()):
            if due_at <= now:
                del self._waiting[key]
                self._add_locked(key)
        if not self._waiting:
            return None
        return max(0.0, min(self._waiting.values()) - now)

    def get(self, timeout: float | None = None) -> Hashable | None:
        """Block until a key is ready and return it, or ``None`` on timeout/shutdown."""
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                next_due = self._promote_due_locked()
                if self._queue:
                    key = self._queue.popleft()
                    self._processing.add(key)
                    self._dirty.discard(key)
                    self._update_depth()
                    return key
                if self._shutting_down:
                    return None

                wait_seconds = next_due
                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        return None
                    wait_seconds = remaining if wait_seconds is None else min(wait_seconds, remaining)
                self._cond.wait(timeout=wait_seconds)

    def done(self, key: Hashable) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._cond.notify()
            self._update_depth()

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._waiting.clear()
            self._update_depth()
            self._cond.notify_all()
