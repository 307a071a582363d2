"""
Poll timer with an owned cancellation token.

The scheduler keeps exactly one pending poll at a time. Every arm() replaces
the previous deadline and issues a fresh token; a wake-up that was already due
but has not yet acquired the owner's lock carries a stale token and returns
without calling back.

ARCHITECTURE:
- One long-lived daemon worker per timer, started on the first arm()
- The worker sleeps on a threading.Event until the deadline or a re-arm
- Callback runs on the worker thread with the owner's lock held
- close() stops the worker; a later arm() starts a new one

USAGE:
    lock = threading.RLock()
    timer = PollTimer(0.010, on_poll, lock)
    timer.arm()      # on_poll() runs ~10ms later, with lock held
    timer.cancel()   # idempotent
    timer.close()    # stop the worker thread
"""

import threading
import time
from typing import Callable, Optional

from tictac.log import get_logger

logger = get_logger(__name__)


WORKER_JOIN_TIMEOUT_S = 1.0


class PollTimer:
    """Single pending callback, re-armable, cancelled by token.

    Attributes:
        interval_s (float): Delay between arm() and the callback
        callback (callable): Invoked with the owner's lock held
        lock (threading.RLock): Lock shared with the owner
    """

    def __init__(self, interval_s: float, callback: Callable[[], None],
                 lock: Optional[threading.RLock] = None) -> None:
        self.interval_s = interval_s
        self.callback = callback
        self.lock = lock if lock is not None else threading.RLock()
        self._token: Optional[object] = None
        self._deadline: Optional[float] = None
        self._wake = threading.Event()
        self._worker: Optional[threading.Thread] = None
        self._running = False

    @property
    def pending(self) -> bool:
        """True while a callback is armed and not yet cancelled or fired."""
        with self.lock:
            return self._token is not None

    def arm(self) -> None:
        """Replace any pending callback with one due interval_s from now."""
        with self.lock:
            self._token = object()
            self._deadline = time.monotonic() + self.interval_s
            if self._worker is None or not self._worker.is_alive():
                self._running = True
                self._worker = threading.Thread(target=self._run, name="tictac-poll", daemon=True)
                self._worker.start()
        self._wake.set()

    def cancel(self) -> None:
        """Cancel the pending callback if present."""
        with self.lock:
            self._token = None
            self._deadline = None
        self._wake.set()

    def close(self) -> None:
        """Cancel and stop the worker thread."""
        with self.lock:
            self._token = None
            self._deadline = None
            self._running = False
            worker = self._worker
            self._worker = None
        self._wake.set()

        if worker is not None and worker is not threading.current_thread():
            worker.join(timeout=WORKER_JOIN_TIMEOUT_S)

    def _run(self) -> None:
        while True:
            # Clear before reading state so a concurrent arm() is never missed
            self._wake.clear()
            with self.lock:
                if not self._running:
                    return
                token, deadline = self._token, self._deadline

            if token is None:
                self._wake.wait()
                continue

            remaining = deadline - time.monotonic()
            if remaining > 0:
                self._wake.wait(remaining)
                continue

            self._fire(token)

    def _fire(self, token: object) -> None:
        with self.lock:
            if token is not self._token:
                return
            self._token = None
            self._deadline = None
            try:
                self.callback()
            except Exception as e:
                logger.error(f"Poll callback failed: {e}")
