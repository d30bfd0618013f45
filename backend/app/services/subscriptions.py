import logging
from threading import Lock
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


class Subscription:
    """Cancellation handle for a live view or listener.

    close() is idempotent and runs every registered close callback exactly once,
    so timers and listeners tied to the view are released however it is torn down.
    """

    def __init__(self, name: str, on_close: Optional[Callable[[], None]] = None) -> None:
        self.name = name
        self._lock = Lock()
        self._closed = False
        self._callbacks: List[Callable[[], None]] = []
        if on_close is not None:
            self._callbacks.append(on_close)

    @property
    def closed(self) -> bool:
        return self._closed

    def add_close_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if not self._closed:
                self._callbacks.append(callback)
                return
        callback()

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Subscription close callback failed: %s", self.name)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
