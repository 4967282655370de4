"""
Cancellation flag shared by the controller and the completion client.

A threading.Event that also runs registered callbacks when it is set. The
client registers `response.close` so a cancel aborts a read that is blocked
waiting for the next line, not just the loop between lines.
"""

from __future__ import annotations
import logging
import threading
from typing import Callable

logger = logging.getLogger(__name__)


class CancelEvent(threading.Event):
    def __init__(self) -> None:
        super().__init__()
        self._callbacks_lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """
        Run `callback` once when the event is set (immediately if it already
        is). Returns a function that unregisters it.
        """
        with self._callbacks_lock:
            if not self.is_set():
                self._callbacks.append(callback)

                def remove() -> None:
                    with self._callbacks_lock:
                        if callback in self._callbacks:
                            self._callbacks.remove(callback)

                return remove
        callback()
        return lambda: None

    def set(self) -> None:
        with self._callbacks_lock:
            if self.is_set():
                return
            super().set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Cancel callback failed")
