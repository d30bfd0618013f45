from contextlib import contextmanager
from threading import Lock
from typing import Hashable, Iterator, Set

from app.services.errors import ConflictError


class InFlightRegistry:
    """Per-entity request-in-flight map.

    A second operation on the same key is refused while the first runs;
    operations on different keys never wait on each other.

    Claims cover only the synchronous mutation steps and the approval coordinator
    never awaits inside one, so on a single event loop a claim guards against
    re-entry; it does not serialize separate requests.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._active: Set[Hashable] = set()

    @contextmanager
    def claim(self, key: Hashable) -> Iterator[None]:
        with self._lock:
            if key in self._active:
                raise ConflictError(f"Another operation is already in progress for {key}")
            self._active.add(key)
        try:
            yield
        finally:
            with self._lock:
                self._active.discard(key)

    def is_busy(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._active
