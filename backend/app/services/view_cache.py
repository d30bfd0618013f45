import logging
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Callable, Dict, List, Optional, Tuple

from app.services.seva_store import utc_now_iso
from app.services.subscriptions import Subscription

logger = logging.getLogger(__name__)

QueryKey = Tuple[str, ...]
Loader = Callable[[], Any]
Listener = Callable[[Any], None]


def key_matches(key: QueryKey, prefix: QueryKey) -> bool:
    return key[: len(prefix)] == prefix


@dataclass
class CachedView:
    key: QueryKey
    loader: Loader
    data: Any = None
    loaded: bool = False
    stale: bool = True
    fetched_at: Optional[str] = None
    fetch_count: int = 0
    last_error: Optional[str] = None
    listeners: Dict[int, Listener] = field(default_factory=dict)


class QueryCache:
    """Read-through cache of view query results keyed by tuples.

    Keys are hierarchical: invalidating ("profiles",) also hits ("profiles", "admin").
    A stale view nobody listens to is dropped; the next read loads it again.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._views: Dict[QueryKey, CachedView] = {}
        self._next_listener_id = 0

    def _view_for(self, key: QueryKey, loader: Loader) -> CachedView:
        with self._lock:
            view = self._views.get(key)
            if view is None:
                view = CachedView(key=key, loader=loader)
                self._views[key] = view
            else:
                view.loader = loader
            return view

    def _load(self, view: CachedView) -> Any:
        try:
            data = view.loader()
        except Exception as exc:
            view.last_error = str(exc)
            raise
        view.data = data
        view.loaded = True
        view.stale = False
        view.fetched_at = utc_now_iso()
        view.fetch_count += 1
        view.last_error = None
        for listener_id, listener in list(view.listeners.items()):
            try:
                listener(data)
            except Exception:
                logger.exception("View listener %s failed for %s", listener_id, view.key)
        return data

    def read(self, key: QueryKey, loader: Loader) -> Any:
        view = self._view_for(key, loader)
        if view.stale or not view.loaded:
            return self._load(view)
        return view.data

    def subscribe(self, key: QueryKey, loader: Loader, listener: Optional[Listener] = None) -> Subscription:
        view = self._view_for(key, loader)
        with self._lock:
            listener_id = self._next_listener_id
            self._next_listener_id += 1
            if listener is not None:
                view.listeners[listener_id] = listener

        def detach() -> None:
            with self._lock:
                view.listeners.pop(listener_id, None)
                if not view.listeners and self._views.get(key) is view:
                    del self._views[key]

        return Subscription(name=":".join(key), on_close=detach)

    def invalidate(self, prefix: QueryKey) -> List[QueryKey]:
        with self._lock:
            matched = [key for key in self._views if key_matches(key, prefix)]
            for key in matched:
                if self._views[key].listeners:
                    self._views[key].stale = True
                else:
                    del self._views[key]
        return matched

    def refetch(self, prefix: QueryKey) -> Tuple[int, int]:
        """Reload every cached view under prefix; returns (refreshed, failed)."""
        with self._lock:
            views = [view for key, view in self._views.items() if key_matches(key, prefix)]
        refreshed = 0
        failed = 0
        for view in views:
            try:
                self._load(view)
                refreshed += 1
            except Exception:
                failed += 1
                logger.exception("Refetch failed for view %s", view.key)
        return refreshed, failed

    def snapshot(self, key: QueryKey) -> Optional[CachedView]:
        with self._lock:
            return self._views.get(key)

    def clear(self) -> None:
        with self._lock:
            self._views.clear()


view_cache = QueryCache()
