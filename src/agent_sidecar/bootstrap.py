"""Process-level wiring: stdin/stdout, signals and fatal-error containment."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import signal
import sys
import traceback
from typing import Any, Callable, Dict, Optional

from .abort import AbortState, create_abort_state, handle_shutdown
from .config import WorkerConfig
from .dispatcher import Dispatcher
from .engines import ConversationEngine, create_engine
from .errors import ConfigError
from .executor import run_agent_request
from .logging_utils import log_event
from .protocol import JsonLineWriter, MessageSink

STDIN_LINE_LIMIT = 64 * 1024 * 1024
SHUTDOWN_SIGNALS = (signal.SIGTERM, signal.SIGINT)

_logger = logging.getLogger(__name__)

ExitFn = Callable[[int], None]


async def open_stdin_reader(limit: int = STDIN_LINE_LIMIT) -> asyncio.StreamReader:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=limit)
    protocol = asyncio.StreamReaderProtocol(reader)
    await loop.connect_read_pipe(lambda: protocol, sys.stdin)
    return reader


def install_signal_handlers(
    state: AbortState,
    worker_config: WorkerConfig,
    *,
    on_signal: Optional[Callable[[], None]] = None,
    exit_fn: Optional[ExitFn] = None,
) -> None:
    loop = asyncio.get_running_loop()

    def _handle(signum: int) -> None:
        log_event(_logger, logging.WARNING, "sidecar.signal", signal=signal.Signals(signum).name)
        handle_shutdown(state, exit_fn, grace_seconds=worker_config.shutdown_grace_seconds)
        if on_signal is not None:
            on_signal()

    for signum in SHUTDOWN_SIGNALS:
        try:
            loop.add_signal_handler(signum, _handle, signum)
        except (NotImplementedError, RuntimeError):
            signal.signal(
                signum,
                lambda received, _frame: loop.call_soon_threadsafe(_handle, received),
            )


def install_fatal_handler(exit_fn: Optional[ExitFn] = None) -> None:
    """Exit non-zero on any exception the event loop could not deliver."""
    loop = asyncio.get_running_loop()
    exit_fn = exit_fn or os._exit

    def _handler(_loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
        exc = context.get("exception")
        detail = context.get("message") or "unhandled exception"
        if exc is not None:
            detail = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        sys.stderr.write(f"[sidecar] fatal: {detail}\n")
        sys.stderr.flush()
        exit_fn(1)

    loop.set_exception_handler(_handler)


async def run_persistent(
    worker_config: WorkerConfig,
    *,
    engine: Optional[ConversationEngine] = None,
    reader: Optional[asyncio.StreamReader] = None,
    write: Optional[MessageSink] = None,
    install_signals: bool = True,
) -> int:
    """Run the line protocol until shutdown or end of input; returns the exit code."""
    process_state = create_abort_state()
    dispatcher = Dispatcher(
        write or JsonLineWriter(),
        engine=engine or create_engine(worker_config),
        worker_config=worker_config,
        shutdown_signal=process_state.token,
    )
    if install_signals:
        install_signal_handlers(process_state, worker_config, on_signal=dispatcher.request_stop)
        install_fatal_handler()
    if reader is None:
        reader = await open_stdin_reader()
    log_event(
        _logger,
        logging.INFO,
        "sidecar.persistent.start",
        pid=os.getpid(),
        mock_agents=worker_config.mock_agents,
    )
    return await dispatcher.run(reader)


async def run_once(
    raw_config: str,
    worker_config: WorkerConfig,
    *,
    engine: Optional[ConversationEngine] = None,
    write: Optional[MessageSink] = None,
    state: Optional[AbortState] = None,
    install_signals: bool = True,
) -> int:
    """
    One-shot mode: run a single request from a JSON config and report the
    outcome through the exit code. Messages are written without request ids.
    """
    write = write or JsonLineWriter()
    try:
        config = json.loads(raw_config)
    except json.JSONDecodeError as exc:
        write({"type": "error", "error": f"Failed to parse config: {exc}"})
        return 1

    state = state or create_abort_state()
    if install_signals:
        install_signal_handlers(state, worker_config)

    def emit(message: Dict[str, Any]) -> None:
        if state.aborted:
            return
        write(message)

    try:
        await run_agent_request(
            config,
            emit,
            state.token,
            engine=engine or create_engine(worker_config),
            worker_config=worker_config,
        )
    except ConfigError as exc:
        write({"type": "error", "error": str(exc)})
        return 1
    except Exception as exc:
        if state.aborted:
            log_event(_logger, logging.INFO, "sidecar.once.cancelled", exc=exc)
            return 0
        log_event(_logger, logging.ERROR, "sidecar.once.failed", exc=exc)
        write({"type": "error", "error": str(exc) or type(exc).__name__})
        return 1
    if state.aborted:
        log_event(_logger, logging.INFO, "sidecar.once.cancelled")
    return 0


def run_entrypoint(coro_factory: Callable[[], Any]) -> int:
    """Run a coroutine to completion, containing any fault as exit status 1."""
    try:
        return int(asyncio.run(coro_factory()))
    except KeyboardInterrupt:
        return 0
    except Exception:
        sys.stderr.write("[sidecar] fatal: " + traceback.format_exc())
        sys.stderr.flush()
        return 1
    finally:
        with contextlib.suppress(Exception):
            sys.stdout.flush()
