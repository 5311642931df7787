"""Control-rate scheduler for sequencer ticks and the clack loop.

Runs independently of the render process. Time comes from an injectable
clock so tests can step it by hand; in live use a daemon thread polls
``run_due()`` every ``CONTROL_INTERVAL`` seconds.
"""

import heapq
import itertools
import logging
import threading
import time
from typing import Callable, Optional

from config import CONTROL_INTERVAL

_LOGGER = logging.getLogger("cabin_audio.scheduler")


class TimerHandle:
    """A pending callback. Cancelling only marks it; the heap drops it lazily."""

    def __init__(self, when: float, callback: Callable[[], None], name: str = ""):
        self.when = when
        self.callback = callback
        self.name = name
        self.cancelled = False

    def cancel(self):
        """Mark the handle so it never fires."""
        self.cancelled = True

    def __repr__(self):
        state = "cancelled" if self.cancelled else "pending"
        return f"TimerHandle({self.name!r}, when={self.when:.3f}, {state})"


class Scheduler:
    """Min-heap of timers keyed by due time."""

    def __init__(self, clock: Callable[[], float] = time.monotonic,
                 interval: float = CONTROL_INTERVAL):
        self.clock = clock
        self.interval = interval
        self._heap: list[tuple[float, int, TimerHandle]] = []
        self._seq = itertools.count()
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    def call_later(self, delay: float, callback: Callable[[], None], name: str = "") -> TimerHandle:
        """Run ``callback`` once, ``delay`` seconds from now."""
        return self.call_at(self.clock() + max(0.0, delay), callback, name)

    def call_at(self, when: float, callback: Callable[[], None], name: str = "") -> TimerHandle:
        """Run ``callback`` once at scheduler time ``when``."""
        handle = TimerHandle(when, callback, name)
        with self._lock:
            heapq.heappush(self._heap, (handle.when, next(self._seq), handle))
        return handle

    @property
    def pending(self) -> int:
        """Number of callbacks that will still fire."""
        with self._lock:
            return sum(1 for _, _, handle in self._heap if not handle.cancelled)

    def cancel_all(self):
        """Cancel every pending callback."""
        with self._lock:
            for _, _, handle in self._heap:
                handle.cancel()
            self._heap.clear()

    def run_due(self, now: Optional[float] = None) -> int:
        """Fire every callback due at ``now``. Returns how many fired.

        Callbacks scheduled while running wait for the next call.
        """
        if now is None:
            now = self.clock()

        due = []
        with self._lock:
            while self._heap and self._heap[0][0] <= now:
                due.append(heapq.heappop(self._heap)[2])

        fired = 0
        for handle in due:
            if handle.cancelled:
                continue
            try:
                handle.callback()
            except Exception:
                _LOGGER.exception("Scheduled callback %r failed", handle.name)
            fired += 1
        return fired

    # --- live driver ------------------------------------------------------

    @property
    def running(self) -> bool:
        """True while the driver thread is alive."""
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        """Start the daemon thread that polls ``run_due()``."""
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="cabin-audio-scheduler", daemon=True)
        self._thread.start()

    def stop(self):
        """Stop the driver thread and wait briefly for it to exit."""
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=1.0)
        self._thread = None

    def _loop(self):
        while not self._stop_event.wait(self.interval):
            self.run_due()


class RepeatingTask:
    """Self-rescheduling callback.

    ``next_delay`` is called after every fire, so the period always comes
    from live state rather than a value captured at start. With
    ``fixed_rate`` the next firing is measured from the previous due time,
    so late firings do not accumulate into tempo drift; a task that falls
    more than a whole period behind skips the missed firings.
    """

    def __init__(self, scheduler: Scheduler, fire: Callable[[], object],
                 next_delay: Callable[[], float], name: str = "", fixed_rate: bool = False):
        self.scheduler = scheduler
        self.fire = fire
        self.next_delay = next_delay
        self.name = name
        self.fixed_rate = fixed_rate
        self.handle: Optional[TimerHandle] = None
        self._cancelled = True

    @property
    def active(self) -> bool:
        """True between ``start()`` and ``cancel()``."""
        return not self._cancelled

    def start(self, delay: float = 0.0):
        """Schedule the first firing ``delay`` seconds from now."""
        self._cancelled = False
        self.handle = self.scheduler.call_later(delay, self._run, self.name)

    def cancel(self):
        """Stop the chain and drop the pending firing."""
        self._cancelled = True
        if self.handle is not None:
            self.handle.cancel()
            self.handle = None

    def _reschedule(self, due: float):
        delay = max(0.0, self.next_delay())
        if not self.fixed_rate:
            self.handle = self.scheduler.call_later(delay, self._run, self.name)
            return
        when = due + delay
        now = self.scheduler.clock()
        if when + delay < now:
            _LOGGER.debug("Task %r fell behind by %.3f s, skipping missed firings", self.name, now - when)
            when = now
        self.handle = self.scheduler.call_at(when, self._run, self.name)

    def _run(self):
        if self._cancelled:
            return
        due = self.handle.when if self.handle is not None else self.scheduler.clock()
        try:
            self.fire()
        finally:
            if not self._cancelled:
                self._reschedule(due)
