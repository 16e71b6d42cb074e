"""Cancellation token shared by the model call, tool executions and summarisation."""

import threading
from typing import Any, Callable, List, Optional

from .errors import AbortError

__all__ = ["CancellationToken", "run_cancellable"]

_POLL_INTERVAL = 0.05


class CancellationToken:
    """One-shot cancellation signal backed by a ``threading.Event``.

    Callbacks registered with :meth:`on_cancel` run once, on the thread that
    calls :meth:`cancel`. A callback registered after cancellation runs
    immediately.
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "aborted") -> None:
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def on_cancel(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register ``callback``; returns a function that unregisters it."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                registered = True
            else:
                registered = False
        if not registered:
            callback()

        def _remove():
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)
        return _remove

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise AbortError(self.reason or "aborted")


def run_cancellable(fn: Callable[..., Any], token: Optional[CancellationToken],
                    *args, **kwargs) -> Any:
    """Run a blocking call in a worker thread, returning early on cancellation.

    Raises :class:`AbortError` as soon as ``token`` is cancelled; the worker
    thread is a daemon and its eventual result is discarded. Exceptions from
    ``fn`` propagate unchanged.
    """
    if token is None:
        return fn(*args, **kwargs)
    token.raise_if_cancelled()

    outcome: dict = {}
    done = threading.Event()

    def _target():
        try:
            outcome["value"] = fn(*args, **kwargs)
        except BaseException as e:  # re-raised on the caller's thread
            outcome["error"] = e
        finally:
            done.set()

    worker = threading.Thread(target=_target, name="cancellable-call", daemon=True)
    worker.start()
    while not done.wait(_POLL_INTERVAL):
        if token.cancelled:
            raise AbortError(token.reason or "aborted")
    if "error" in outcome:
        raise outcome["error"]
    return outcome.get("value")
