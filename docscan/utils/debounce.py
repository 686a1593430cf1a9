from __future__ import annotations
from typing import Any, Callable
import threading


class Debouncer:
    """
    Coalesce rapid calls: each call restarts a quiet-period timer and only
    the last call's arguments reach `fn` once the timer expires.

    `flush()` runs the pending call immediately; `cancel()` drops it.
    """

    def __init__(self, fn: Callable[..., Any], delay: float):
        self.fn = fn
        self.delay = delay
        self._lock = threading.Lock()
        self._timer: threading.Timer | None = None
        self._args: tuple = ()
        self._kwargs: dict = {}

    def __call__(self, *args, **kwargs) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._args, self._kwargs = args, kwargs
            self._timer = threading.Timer(self.delay, self._fire)
            self._timer.daemon = True
            self._timer.start()

    @property
    def pending(self) -> bool:
        return self._timer is not None

    def _take(self):
        with self._lock:
            if self._timer is None:
                return None
            self._timer.cancel()
            self._timer = None
            return self._args, self._kwargs

    def _fire(self) -> None:
        call = self._take()
        if call is not None:
            self.fn(*call[0], **call[1])

    def flush(self) -> Any:
        """Run the pending call now. Returns its result, or None if nothing was pending."""
        call = self._take()
        if call is None:
            return None
        return self.fn(*call[0], **call[1])

    def cancel(self) -> None:
        self._take()
