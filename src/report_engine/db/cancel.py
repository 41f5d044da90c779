from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Callable, Iterator, List, Optional

from report_engine.exceptions.errors import OperationCancelled
from report_engine.logging.logger import get_logger

log = get_logger("db.cancel")


class CancelToken:
    """Cooperative cancellation shared by the executor, adapters and renderer.

    Work checks `cancelled` / `raise_if_cancelled()` at safe points and uses
    `wait()` instead of `time.sleep()`. Blocking driver calls register an
    interrupt with `on_cancel()` so a cancel from another thread aborts them.
    A token created with a parent is cancelled whenever the parent is.
    """

    def __init__(self, parent: Optional["CancelToken"] = None):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []
        self.reason: Optional[str] = None
        if parent is not None:
            parent._add(self._parent_cancelled)

    def _parent_cancelled(self) -> None:
        self.cancel("parent cancelled")

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        for cb in callbacks:
            self._run(cb)

    def wait(self, seconds: float) -> bool:
        """Sleep up to `seconds`; True if the token was cancelled meanwhile."""
        return self._event.wait(max(0.0, seconds))

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled(f"Operation cancelled: {self.reason}")

    @contextmanager
    def on_cancel(self, callback: Callable[[], None]) -> Iterator[None]:
        """Run `callback` if the token is cancelled while the block is active."""
        self._add(callback)
        try:
            yield
        finally:
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)

    def _add(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        self._run(callback)

    @staticmethod
    def _run(callback: Callable[[], None]) -> None:
        try:
            callback()
        except Exception:
            # An interrupt that fails must not stop the remaining ones; the
            # interrupted operation still surfaces its own error.
            log.exception("Cancel callback failed")
