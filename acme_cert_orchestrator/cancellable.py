"""
Caller-driven cancellation for blocking remote calls.

A Context carries a cancellation signal and an optional deadline. Blocking
calls that have no native cancellation support are run with
run_cancellable(), which returns as soon as either the call completes or the
context is done. When the context wins, the call keeps running on its own
thread and its result is discarded: a remote side effect (for example a
certificate issued by the CA) may still happen after the caller has observed
the cancellation.
"""

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future
from typing import Any, TypeVar

from acme_cert_orchestrator.exceptions import CancellationError, DeadlineExceeded

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Context:
    """
    Cancellation signal with an optional deadline.

    Args:
        timeout: Seconds until the context expires with DeadlineExceeded (optional).
        parent: Context whose cancellation also cancels this one (optional).
    """

    def __init__(self, timeout: float | None = None, parent: "Context | None" = None):
        self._lock = threading.Lock()
        self._done = threading.Event()
        self._error: CancellationError | None = None
        self._callbacks: list[Callable[["Context"], None]] = []
        self._timer: threading.Timer | None = None
        self._parent = parent

        self.deadline: float | None = None
        if timeout is not None:
            self.deadline = time.monotonic() + max(timeout, 0.0)
        if parent is not None and parent.deadline is not None:
            if self.deadline is None or parent.deadline < self.deadline:
                self.deadline = parent.deadline

        if parent is not None:
            parent.add_done_callback(self._on_parent_done)

        if self.deadline is not None and not self._done.is_set():
            delay = self.deadline - time.monotonic()
            if delay <= 0:
                self._finish(DeadlineExceeded())
            else:
                self._timer = threading.Timer(delay, self._finish, args=(DeadlineExceeded(),))
                self._timer.daemon = True
                self._timer.start()

    def __enter__(self) -> "Context":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.cancel()

    def __repr__(self) -> str:
        state = type(self._error).__name__ if self._error else "active"
        return f"<Context {state} remaining={self.remaining()}>"

    def child(self, timeout: float | None = None) -> "Context":
        """Derive a context that is cancelled with this one."""
        return Context(timeout=timeout, parent=self)

    def cancel(self) -> None:
        """Cancel the context. Idempotent; the first reason wins."""
        self._finish(CancellationError())

    def done(self) -> bool:
        """Return True once the context was cancelled or its deadline elapsed."""
        return self._done.is_set()

    def error(self) -> CancellationError | None:
        """Return the reason the context is done, or None while it is active."""
        with self._lock:
            return self._error

    def raise_if_done(self) -> None:
        """Raise the cancellation reason if the context is done."""
        err = self.error()
        if err is not None:
            raise err

    def remaining(self) -> float | None:
        """Seconds left before the deadline, or None if there is no deadline."""
        if self.deadline is None:
            return None
        return max(self.deadline - time.monotonic(), 0.0)

    def wait(self, timeout: float | None = None) -> bool:
        """
        Block until the context is done or the timeout elapses.

        Returns:
            bool: True if the context is done.
        """
        return self._done.wait(timeout)

    def sleep(self, seconds: float) -> None:
        """
        Sleep for the given duration, waking early if the context is done.

        Raises:
            CancellationError: If the context is, or becomes, done.
        """
        self.raise_if_done()
        if self._done.wait(max(seconds, 0.0)):
            self.raise_if_done()

    def add_done_callback(self, fn: Callable[["Context"], None]) -> None:
        """Call fn(context) when the context is done (immediately if it already is)."""
        with self._lock:
            if self._error is None:
                self._callbacks.append(fn)
                return
        fn(self)

    def remove_done_callback(self, fn: Callable[["Context"], None]) -> None:
        with self._lock:
            try:
                self._callbacks.remove(fn)
            except ValueError:
                pass

    def _on_parent_done(self, parent: "Context") -> None:
        self._finish(parent.error() or CancellationError())

    def _finish(self, error: CancellationError) -> None:
        with self._lock:
            if self._error is not None:
                return
            self._error = error
            callbacks, self._callbacks = self._callbacks, []
            timer, self._timer = self._timer, None

        if timer is not None:
            timer.cancel()
        if self._parent is not None:
            self._parent.remove_done_callback(self._on_parent_done)

        self._done.set()
        for callback in callbacks:
            try:
                callback(self)
            except Exception:
                logger.exception("Context done callback raised")


def background() -> Context:
    """Return a context that is never cancelled unless cancel() is called."""
    return Context()


def run_cancellable(ctx: Context, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """
    Run a blocking call so that it observes the caller's cancellation.

    The call runs on a daemon thread. This function returns the call's result
    (or re-raises its exception) if it completes first; if the context is done
    first, the context's CancellationError is raised immediately and the call
    is left to finish in the background with its result discarded. The call
    is never retried.

    Args:
        ctx: Cancellation context.
        fn: The blocking callable.
        *args: Positional arguments for fn.
        **kwargs: Keyword arguments for fn.

    Returns:
        The value returned by fn.

    Raises:
        CancellationError: If the context is done before fn returns.
    """
    ctx.raise_if_done()

    future: Future = Future()
    wake = threading.Event()

    def runner() -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            result = fn(*args, **kwargs)
        except BaseException as e:
            future.set_exception(e)
        else:
            future.set_result(result)

    def on_done(_: Context) -> None:
        wake.set()

    future.add_done_callback(lambda _: wake.set())
    ctx.add_done_callback(on_done)

    name = getattr(fn, "__qualname__", repr(fn))
    thread = threading.Thread(target=runner, name=f"cancellable-{name}", daemon=True)
    thread.start()

    try:
        wake.wait()
    finally:
        ctx.remove_done_callback(on_done)

    if future.done():
        return future.result()

    err = ctx.error() or CancellationError()
    logger.warning(f"Abandoning '{name}' after {type(err).__name__}; it keeps running in the background")
    raise err
