"""
Layer 3 — Tick Scheduler
Fixed-interval recurring task with single-flight invocation.

A tick that fires while the previous one is still running is dropped,
never run concurrently: the detection state is single-writer.
"""
import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class RecurringTask:
    """
    Calls `callback` every `period` seconds on a background thread.

    The callback returns False to request a stop. `max_ticks` caps the
    number of executed ticks (None for no cap).
    """

    def __init__(self, callback: Callable[[], bool], period: float = 0.5,
                 max_ticks: Optional[int] = 12000, name: str = "autocapture-ticks"):
        if period <= 0:
            raise ValueError(f"Period must be positive, got {period}")
        self.callback = callback
        self.period = period
        self.max_ticks = max_ticks
        self.name = name

        self.ticks = 0
        self.dropped_ticks = 0
        self._busy = threading.Lock()
        self._stop_event = threading.Event()
        self._stop_lock = threading.Lock()
        self._stopped = False
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop_event.is_set()

    @property
    def stopped(self) -> bool:
        return self._stopped

    def start(self):
        if self._thread is not None:
            raise RuntimeError("RecurringTask can only be started once")
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        logger.info(f"Scheduler started: every {self.period * 1000:.0f} ms")

    def _run(self):
        while not self._stop_event.wait(self.period):
            self.fire()

    def fire(self) -> bool:
        """
        Run one tick unless another is still in flight.

        Returns:
            bool: True if the callback ran
        """
        if self._stop_event.is_set():
            return False

        if not self._busy.acquire(blocking=False):
            self.dropped_ticks += 1
            logger.debug("Previous tick still running, tick dropped")
            return False

        if self._stop_event.is_set():
            # stop() landed between the check above and the lock
            self._busy.release()
            return False

        try:
            self.ticks += 1
            keep_going = self.callback()
        except Exception:
            # A failing tick must not kill the loop; the next tick is the retry
            logger.exception("Tick failed")
            keep_going = True
        finally:
            self._busy.release()

        if keep_going is False:
            self.stop()
        elif self.max_ticks is not None and self.ticks >= self.max_ticks:
            logger.warning(f"Tick cap of {self.max_ticks} reached, stopping scheduler")
            self.stop()
        return True

    def stop(self) -> bool:
        """
        Signal the loop to end. Idempotent.

        Returns:
            bool: True only for the call that actually stopped the task
        """
        with self._stop_lock:
            if self._stopped:
                return False
            self._stopped = True
            self._stop_event.set()
        logger.info(f"Scheduler stopped after {self.ticks} ticks ({self.dropped_ticks} dropped)")
        return True

    def join(self, timeout: Optional[float] = None):
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """
        Block until no tick is in flight.

        After stop(), a True return means no further tick will run.

        Returns:
            bool: False on timeout, or when called from inside a tick
        """
        if self._thread is threading.current_thread():
            return False
        if timeout is None:
            acquired = self._busy.acquire()
        else:
            acquired = self._busy.acquire(timeout=timeout)
        if acquired:
            self._busy.release()
        return acquired
