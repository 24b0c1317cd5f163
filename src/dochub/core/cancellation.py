from __future__ import annotations

import threading


class CancellationToken:
    """Cooperative cancellation flag handed to every unit of work in a bulk run."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()
