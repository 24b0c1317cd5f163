from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, TypeVar

from dochub.errors import LetterWorkflowError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def call_with_timeout(
    fn: Callable[..., T],
    *args: Any,
    timeout: float,
    error_cls: type[LetterWorkflowError],
    label: str,
    **kwargs: Any,
) -> T:
    """Runs a collaborator call on its own daemon thread and waits at most ``timeout`` seconds.

    The deadline starts when the call starts. A timeout or an unexpected
    exception becomes ``error_cls``; workflow errors raised by the collaborator
    pass through unchanged. A call that overruns is abandoned on its thread and
    its result is discarded, so it never holds up later calls.
    """
    future: Future[T] = Future()

    def _run() -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as exc:
            future.set_exception(exc)

    thread = threading.Thread(target=_run, name=f"dochub-{label.replace(' ', '-')}", daemon=True)
    thread.start()
    try:
        return future.result(timeout=timeout)
    except FutureTimeoutError as exc:
        logger.warning("%s timed out after %ss", label, timeout)
        raise error_cls(f"{label} timed out after {timeout}s") from exc
    except LetterWorkflowError:
        raise
    except Exception as exc:
        logger.warning("%s failed: %s", label, exc)
        raise error_cls(f"{label} failed: {exc}") from exc
