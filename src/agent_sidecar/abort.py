"""Cancellation tokens and shutdown coordination for engine invocations.

Every engine call owns one ``AbortState``. Callers that want to cancel a
call from outside (the dispatcher preempting a stale request, or the
process receiving SIGTERM) fire a token that is linked into that state.
"""

from __future__ import annotations

import asyncio
import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Protocol

from .logging_utils import log_event

SHUTDOWN_GRACE_SECONDS = 3.0

_logger = logging.getLogger(__name__)

ExitFn = Callable[[int], None]


class Timer(Protocol):
    def cancel(self) -> None: ...


TimerFn = Callable[[Callable[[], None], float], Timer]


class CancellationToken:
    """One-shot cancellation signal that can be awaited or observed."""

    def __init__(self) -> None:
        self._cancelled = False
        self._listeners: List[Callable[[], None]] = []
        self._waiters: List[asyncio.Future] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.get_loop().call_soon_threadsafe(_resolve, waiter)
        listeners, self._listeners = self._listeners, []
        for listener in listeners:
            try:
                listener()
            except Exception as exc:
                log_event(_logger, logging.ERROR, "cancellation.listener_failed", exc=exc)

    def add_listener(self, callback: Callable[[], None]) -> None:
        """Register a callback that runs once, when the token fires."""
        if self._cancelled:
            callback()
            return
        self._listeners.append(callback)

    def remove_listener(self, callback: Callable[[], None]) -> None:
        try:
            self._listeners.remove(callback)
        except ValueError:
            pass

    async def wait(self) -> None:
        if self._cancelled:
            return
        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        finally:
            if waiter in self._waiters:
                self._waiters.remove(waiter)


def _resolve(waiter: asyncio.Future) -> None:
    if not waiter.done():
        waiter.set_result(None)


@dataclass
class AbortState:
    aborted: bool = False
    token: CancellationToken = field(default_factory=CancellationToken)

    def abort(self) -> None:
        self.aborted = True
        self.token.cancel()


def create_abort_state() -> AbortState:
    return AbortState()


def link_external_signal(
    state: AbortState, signal: CancellationToken
) -> Callable[[], None]:
    """
    Forward an externally owned signal into ``state``. An already-fired
    signal aborts immediately; otherwise the abort happens when it fires.
    The external signal is observed, never fired, from here.

    Returns a callable that detaches ``state`` from a long-lived signal.
    """
    if signal.cancelled:
        state.abort()
        return _noop
    listener = state.abort
    signal.add_listener(listener)
    return lambda: signal.remove_listener(listener)


def _noop() -> None:
    return None


def _default_exit(code: int) -> None:
    os._exit(code)


def _default_timer(callback: Callable[[], None], delay: float) -> Timer:
    # Daemon thread so a clean exit is never held up by the pending timer.
    timer = threading.Timer(delay, callback)
    timer.daemon = True
    timer.start()
    return timer


def handle_shutdown(
    state: AbortState,
    exit_fn: Optional[ExitFn] = None,
    timer_fn: Optional[TimerFn] = None,
    *,
    grace_seconds: float = SHUTDOWN_GRACE_SECONDS,
) -> Timer:
    """
    React to SIGTERM/SIGINT: abort the current call and arm a forced exit
    for engines that ignore cooperative cancellation.
    """
    exit_fn = exit_fn or _default_exit
    timer_fn = timer_fn or _default_timer
    log_event(_logger, logging.INFO, "sidecar.shutdown.signal", grace_seconds=grace_seconds)
    state.abort()
    return timer_fn(lambda: exit_fn(0), grace_seconds)
