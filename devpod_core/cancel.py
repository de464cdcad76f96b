from __future__ import annotations

import threading
import time
from typing import Callable

from devpod_core.errors import CancelledError, DeadlineExceeded


class CancelToken:
    """Cooperative cancellation shared between a caller and the work it starts.

    A token is cancelled explicitly through ``cancel()``, implicitly when its
    deadline passes, or when its parent is cancelled. Child tokens never
    cancel their parent.
    """

    def __init__(self, *, deadline: float | None = None, parent: "CancelToken | None" = None):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []
        self._expired = False
        self._parent = parent
        if parent is not None and parent.deadline is not None:
            deadline = parent.deadline if deadline is None else min(deadline, parent.deadline)
        self.deadline = deadline
        if parent is not None:
            parent.on_cancel(self._cancel_from_parent)

    def child(self, timeout: float | None = None) -> "CancelToken":
        deadline = None if timeout is None else time.monotonic() + timeout
        return CancelToken(deadline=deadline, parent=self)

    def _cancel_from_parent(self) -> None:
        parent = self._parent
        self._cancel(expired=parent is not None and parent.expired)

    def _cancel(self, *, expired: bool) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._expired = expired
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        for callback in callbacks:
            callback()

    def cancel(self) -> None:
        self._cancel(expired=False)

    def on_cancel(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def _check_deadline(self) -> None:
        if self.deadline is not None and not self._event.is_set():
            if time.monotonic() >= self.deadline:
                self._cancel(expired=True)

    @property
    def cancelled(self) -> bool:
        self._check_deadline()
        return self._event.is_set()

    @property
    def expired(self) -> bool:
        self._check_deadline()
        return self._expired

    def remaining(self) -> float | None:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return True if the token was cancelled meanwhile."""
        remaining = self.remaining()
        if remaining is not None:
            seconds = min(seconds, remaining)
        self._event.wait(max(0.0, seconds))
        return self.cancelled

    def check(self) -> None:
        if not self.cancelled:
            return
        if self._expired:
            raise DeadlineExceeded("context deadline exceeded")
        raise CancelledError("context canceled")


def background() -> CancelToken:
    return CancelToken()


def with_timeout(parent: CancelToken | None, seconds: float) -> CancelToken:
    return (parent or background()).child(seconds)
