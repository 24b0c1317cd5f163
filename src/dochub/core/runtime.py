from __future__ import annotations

import threading
from concurrent.futures import Future

from dochub.core.cancellation import CancellationToken

_BULK_REGISTRY: BulkRegistry | None = None
_LOCK = threading.Lock()

class BulkRegistry:
    """In-process handles for bulk operations that are still running."""

    def __init__(self) -> None:
        self._tokens: dict[int, CancellationToken] = {}
        self._drivers: dict[int, Future[None]] = {}
        self._lock = threading.Lock()

    def register(self, operation_id: int, token: CancellationToken, driver: Future[None]) -> None:
        with self._lock:
            self._tokens[operation_id] = token
            self._drivers[operation_id] = driver
        driver.add_done_callback(lambda _: self._forget(operation_id))

    def token(self, operation_id: int) -> CancellationToken | None:
        with self._lock:
            return self._tokens.get(operation_id)

    def driver(self, operation_id: int) -> Future[None] | None:
        with self._lock:
            return self._drivers.get(operation_id)

    def running(self) -> list[int]:
        with self._lock:
            return sorted(self._drivers)

    def _forget(self, operation_id: int) -> None:
        with self._lock:
            self._tokens.pop(operation_id, None)
            self._drivers.pop(operation_id, None)


def get_bulk_registry() -> BulkRegistry:
    global _BULK_REGISTRY
    with _LOCK:
        if _BULK_REGISTRY is None:
            _BULK_REGISTRY = BulkRegistry()
    return _BULK_REGISTRY
