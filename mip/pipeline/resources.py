import logging
import threading
from typing import Any, Callable, Dict, Generic, TypeVar

T = TypeVar("T")


class KeyedResourceCache(Generic[T]):
    """Lazily created, shared resources keyed by name.

    ``use`` returns the cached resource or builds it with ``factory``;
    ``release`` drops and closes one entry. A single lock guards every
    read-modify-write of the cache.
    """

    def __init__(self):
        self._resources: Dict[str, T] = {}
        self._lock = threading.Lock()
        self._closed = False
        self.logger = logging.getLogger(__name__)

    def use(self, key: str, factory: Callable[[], T]) -> T:
        with self._lock:
            if self._closed:
                raise RuntimeError("Resource cache is closed")
            resource = self._resources.get(key)
            if resource is None:
                resource = factory()
                self._resources[key] = resource
            return resource

    def release(self, key: str) -> bool:
        with self._lock:
            resource = self._resources.pop(key, None)
        if resource is None:
            return False
        self._dispose(key, resource)
        return True

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            resources = list(self._resources.items())
            self._resources.clear()
        for key, resource in resources:
            self._dispose(key, resource)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._resources

    def __len__(self) -> int:
        with self._lock:
            return len(self._resources)

    def _dispose(self, key: str, resource: Any) -> None:
        close = getattr(resource, "close", None)
        if close is None:
            return
        try:
            close()
        except Exception as e:
            self.logger.warning(f"Failed to close resource {key}: {e}")
