"""Context — caller-supplied deadline and cancellation for network operations."""

from __future__ import annotations

import functools
import logging
import threading
import time
from typing import TYPE_CHECKING, TypeVar

from keyswitch._errors import Canceled, DeadlineExceeded

if TYPE_CHECKING:
    from collections.abc import Callable
    from concurrent.futures import Executor

log = logging.getLogger(__name__)

T = TypeVar("T")


def _nothing() -> None:
    pass


class Context:
    """A cancellable deadline shared by the calls of one operation.

    :param timeout: Seconds from now until the deadline, or ``None`` for no deadline.
    """

    def __init__(self, timeout: float | None = None) -> None:
        if timeout is not None and timeout < 0:
            raise ValueError(f"timeout must not be negative, got {timeout!r}")
        self._deadline = None if timeout is None else time.monotonic() + timeout
        self._canceled = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []

    @classmethod
    def background(cls) -> Context:
        """A context that never expires and is never canceled by itself."""
        return cls()

    def __repr__(self) -> str:
        return f"Context(remaining={self.remaining()!r}, canceled={self.canceled})"

    def cancel(self) -> None:
        """Cancel the context and run the registered cancel callbacks once."""
        with self._lock:
            if self._canceled.is_set():
                return
            self._canceled.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def on_cancel(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Run ``callback`` when the context is canceled, at once if it already is.

        :returns: A function that unregisters ``callback``.
        """
        with self._lock:
            if not self._canceled.is_set():
                self._callbacks.append(callback)
                return functools.partial(self._discard, callback)
        callback()
        return _nothing

    def _discard(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    @property
    def canceled(self) -> bool:
        return self._canceled.is_set()

    @property
    def expired(self) -> bool:
        return self._deadline is not None and time.monotonic() >= self._deadline

    def remaining(self) -> float | None:
        """Seconds left before the deadline (never negative), or ``None`` without one."""
        if self._deadline is None:
            return None
        return max(self._deadline - time.monotonic(), 0.0)

    def timeout_for(self, ceiling: float) -> float:
        """Return the time budget for one call: the remaining time capped at ``ceiling``."""
        left = self.remaining()
        return ceiling if left is None else min(left, ceiling)

    def check(self, operation: str, key: str | None = None) -> None:
        """Raise if the context is canceled or past its deadline.

        :raises Canceled: If :meth:`cancel` was called.
        :raises DeadlineExceeded: If the deadline has passed.
        """
        if self.canceled:
            raise Canceled("Operation canceled", key=key, operation=operation)
        if self.expired:
            raise DeadlineExceeded("Operation deadline exceeded", key=key, operation=operation)


def call_interruptibly(
    executor: Executor,
    ctx: Context,
    operation: str,
    key: str | None,
    fn: Callable[[], T],
    *,
    abort: Callable[[], None] | None = None,
) -> T:
    """Run ``fn`` on ``executor`` and wait until it finishes, ``ctx`` is canceled or its deadline passes.

    On interruption ``abort`` is called to tear down the in-flight call and
    the caller returns at once; the abandoned call's outcome is discarded.

    :raises Canceled: If ``ctx`` was canceled first.
    :raises DeadlineExceeded: If the deadline passed first.
    """
    ctx.check(operation, key)
    wake = threading.Event()
    future = executor.submit(fn)
    future.add_done_callback(lambda _: wake.set())
    unregister = ctx.on_cancel(wake.set)
    try:
        wake.wait(ctx.remaining())
    finally:
        unregister()
    if future.done():
        return future.result()

    future.cancel()
    if abort is not None:
        abort()
    log.debug("Interrupted %s (%s)", operation, "canceled" if ctx.canceled else "deadline")
    ctx.check(operation, key)
    raise DeadlineExceeded("Operation deadline exceeded", key=key, operation=operation)
