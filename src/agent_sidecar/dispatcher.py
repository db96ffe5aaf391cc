"""Protocol dispatcher: the worker's read loop.

Reads one envelope per line, keeps at most one engine invocation active
(single-flight), and reports every request's end with ``request_complete``.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Set, Tuple, Union

from .abort import AbortState, CancellationToken, create_abort_state, link_external_signal
from .config import WorkerConfig, default_worker_config
from .engines import ConversationEngine, EngineMessage
from .errors import ConfigError, ProtocolError, SessionClosedError
from .executor import run_agent_request
from .logging_utils import log_event
from .protocol import (
    MessageSink,
    error_message,
    parse_incoming_message,
    pong_message,
    ready_message,
    request_complete_message,
    wrap_with_request_id,
)
from .schemas import (
    AgentRequest,
    CancelRequest,
    EngineConfig,
    PingRequest,
    ShutdownRequest,
    StreamEndRequest,
    StreamMessageRequest,
    StreamStartRequest,
    parse_engine_config,
)
from .stream_session import StreamSession

_logger = logging.getLogger(__name__)


def _noop() -> None:
    return None


@dataclass
class _Execution:
    request_id: str
    abort: AbortState
    task: asyncio.Task
    session: Optional[StreamSession] = None
    unlink: Optional[Callable[[], None]] = None

    def matches(self, request_id: str) -> bool:
        if self.session is not None:
            return self.session.current_request_id == request_id
        return self.request_id == request_id


class Dispatcher:
    def __init__(
        self,
        write: MessageSink,
        *,
        engine: ConversationEngine,
        worker_config: Optional[WorkerConfig] = None,
        shutdown_signal: Optional[CancellationToken] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._write = write
        self._engine = engine
        self._worker_config = worker_config or default_worker_config()
        self._shutdown_signal = shutdown_signal
        self._logger = logger or _logger

        self._in_flight: Set[asyncio.Task] = set()
        self._sessions: Dict[str, StreamSession] = {}
        self._active: Optional[_Execution] = None
        self._accepting = True
        self._stop_requested: Optional[asyncio.Event] = None

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    @property
    def sessions(self) -> Dict[str, StreamSession]:
        return dict(self._sessions)

    def active_request_id(self) -> Optional[str]:
        active = self._active
        if active is None:
            return None
        if active.session is not None:
            return active.session.current_request_id
        return active.request_id

    def request_stop(self) -> None:
        """Stop reading input (e.g. on SIGTERM); in-flight work is still drained."""
        self._accepting = False
        if self._stop_requested is not None:
            self._stop_requested.set()

    async def run(self, reader: asyncio.StreamReader) -> int:
        self._stop_requested = asyncio.Event()
        if not self._accepting:
            self._stop_requested.set()
        self._write(ready_message())
        log_event(self._logger, logging.INFO, "dispatcher.ready")
        try:
            while self._accepting:
                line = await self._next_line(reader)
                if line is None:
                    log_event(self._logger, logging.INFO, "dispatcher.input_closed")
                    break
                if not await self.handle_line(line):
                    break
        finally:
            self._accepting = False
            await self.drain()
        log_event(self._logger, logging.INFO, "dispatcher.exited")
        return 0

    async def _next_line(self, reader: asyncio.StreamReader) -> Optional[bytes]:
        assert self._stop_requested is not None
        while True:
            read_task = asyncio.ensure_future(_read_line(reader))
            stop_task = asyncio.ensure_future(self._stop_requested.wait())
            try:
                done, _ = await asyncio.wait(
                    {read_task, stop_task}, return_when=asyncio.FIRST_COMPLETED
                )
            finally:
                stop_task.cancel()
            if read_task not in done:
                read_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await read_task
                return None
            try:
                line = read_task.result()
            except asyncio.LimitOverrunError as exc:
                log_event(self._logger, logging.WARNING, "dispatcher.line_too_long", exc=exc)
                self._write(error_message("Unrecognized input: line too long"))
                continue
            return line or None

    async def handle_line(self, line: Union[str, bytes]) -> bool:
        """Handle one inbound line. Returns False when the loop should stop."""
        try:
            message = parse_incoming_message(line)
        except ProtocolError as exc:
            log_event(self._logger, logging.WARNING, "dispatcher.bad_line", exc=exc)
            self._write(error_message(str(exc)))
            return True

        if isinstance(message, PingRequest):
            self._write(pong_message())
            return True
        if isinstance(message, ShutdownRequest):
            log_event(self._logger, logging.INFO, "dispatcher.shutdown", in_flight=self.in_flight)
            self._accepting = False
            return False
        if isinstance(message, CancelRequest):
            self.cancel(message.request_id)
            return True
        if isinstance(message, AgentRequest):
            await self.start_request(message.request_id, message.config)
            return True
        if isinstance(message, StreamStartRequest):
            await self.start_session(message.session_id, message.request_id, message.config)
            return True
        if isinstance(message, StreamMessageRequest):
            self.push_session_message(message.session_id, message.request_id, message.message)
            return True
        if isinstance(message, StreamEndRequest):
            self.close_session(message.session_id)
            return True
        return True

    def cancel(self, request_id: str) -> bool:
        active = self._active
        if active is None or not active.matches(request_id):
            log_event(
                self._logger,
                logging.INFO,
                "dispatcher.cancel.ignored",
                request_id=request_id,
                active_request_id=self.active_request_id(),
            )
            return False
        log_event(self._logger, logging.INFO, "dispatcher.cancel", request_id=request_id)
        active.abort.abort()
        return True

    async def start_request(self, request_id: str, raw_config: dict) -> None:
        # An invalid config fails only its own request; the active one keeps running.
        try:
            config = parse_engine_config(raw_config)
        except ConfigError as exc:
            log_event(
                self._logger, logging.WARNING, "request.config_invalid", request_id=request_id, exc=exc
            )
            self._write(wrap_with_request_id(request_id, error_message(str(exc))))
            self._write(request_complete_message(request_id))
            return

        await self._preempt()
        abort, unlink = self._new_abort_state()
        task = asyncio.create_task(
            self._execute_request(request_id, config, abort, unlink),
            name=f"agent-request:{request_id}",
        )
        self._active = _Execution(request_id=request_id, abort=abort, task=task, unlink=unlink)
        self._track(task)

    async def _execute_request(
        self,
        request_id: str,
        config: EngineConfig,
        abort: AbortState,
        unlink: Callable[[], None],
    ) -> None:
        def emit(message: EngineMessage) -> None:
            self._write(wrap_with_request_id(request_id, message))

        log_event(self._logger, logging.INFO, "request.started", request_id=request_id)
        try:
            await run_agent_request(
                config,
                emit,
                abort.token,
                engine=self._engine,
                worker_config=self._worker_config,
            )
        except Exception as exc:
            if abort.aborted:
                log_event(
                    self._logger, logging.INFO, "request.cancelled", request_id=request_id, exc=exc
                )
            else:
                log_event(
                    self._logger, logging.WARNING, "request.failed", request_id=request_id, exc=exc
                )
                emit(error_message(str(exc) or type(exc).__name__))
        finally:
            unlink()
            self._write(request_complete_message(request_id))
            if self._active is not None and self._active.abort is abort:
                self._active = None
            log_event(
                self._logger,
                logging.INFO,
                "request.completed",
                request_id=request_id,
                aborted=abort.aborted,
            )

    async def start_session(self, session_id: str, request_id: str, raw_config: dict) -> None:
        def reject(message: str) -> None:
            self._write(wrap_with_request_id(request_id, error_message(message)))
            self._write(wrap_with_request_id(request_id, {"type": "turn_complete"}))

        existing = self._sessions.get(session_id)
        if existing is not None and not existing.closed:
            reject(f"StreamSession {session_id} already exists")
            return
        try:
            config = parse_engine_config(raw_config)
        except ConfigError as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "session.config_invalid",
                session_id=session_id,
                request_id=request_id,
                exc=exc,
            )
            reject(str(exc))
            return

        await self._preempt()
        abort, unlink = self._new_abort_state()
        session = StreamSession(
            session_id,
            request_id,
            config,
            lambda rid, message: self._write(wrap_with_request_id(rid, message)),
            abort.token,
            engine=self._engine,
            worker_config=self._worker_config,
            mock_mode=self._worker_config.mock_agents,
        )
        self._sessions[session_id] = session
        task = session.start()
        execution = _Execution(
            request_id=request_id, abort=abort, task=task, session=session, unlink=unlink
        )
        self._active = execution
        self._track(task)
        task.add_done_callback(lambda _t: self._on_session_done(execution))

    def push_session_message(self, session_id: str, request_id: str, message: str) -> None:
        session = self._sessions.get(session_id)
        try:
            if session is None:
                raise SessionClosedError(f"StreamSession {session_id} not found")
            session.push(request_id, message)
        except SessionClosedError as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "session.push_rejected",
                session_id=session_id,
                request_id=request_id,
                exc=exc,
            )
            self._write(wrap_with_request_id(request_id, error_message(str(exc))))
            self._write(wrap_with_request_id(request_id, {"type": "turn_complete"}))

    def close_session(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return
        log_event(self._logger, logging.INFO, "session.close", session_id=session_id)
        session.close()

    def _on_session_done(self, execution: _Execution) -> None:
        session = execution.session
        assert session is not None
        if execution.unlink is not None:
            execution.unlink()
        if self._sessions.get(session.session_id) is session:
            self._sessions.pop(session.session_id, None)
            log_event(self._logger, logging.INFO, "session.evicted", session_id=session.session_id)
        if self._active is execution:
            self._active = None

    async def _preempt(self) -> None:
        """Cancel the active execution and wait for it to settle."""
        active = self._active
        if active is None:
            return
        log_event(
            self._logger,
            logging.INFO,
            "dispatcher.preempt",
            request_id=self.active_request_id(),
        )
        if active.session is not None:
            self.close_session(active.session.session_id)
            active.session.close()
        active.abort.abort()
        if not active.task.done():
            await asyncio.wait({active.task})
        if self._active is active:
            self._active = None

    def _new_abort_state(self) -> Tuple[AbortState, Callable[[], None]]:
        """Create an abort state linked to the shutdown signal, plus its unlink."""
        abort = create_abort_state()
        if self._shutdown_signal is None:
            return abort, _noop
        return abort, link_external_signal(abort, self._shutdown_signal)

    def _track(self, task: asyncio.Task) -> None:
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)

    async def drain(self) -> None:
        """Close open sessions and wait for every tracked execution to settle."""
        for session_id in list(self._sessions):
            self.close_session(session_id)
        pending = set(self._in_flight)
        if pending:
            log_event(self._logger, logging.INFO, "dispatcher.draining", in_flight=len(pending))
            await asyncio.wait(pending)


async def _read_line(reader: asyncio.StreamReader) -> bytes:
    """Read one newline-terminated line; an over-long line is consumed whole."""
    try:
        return await reader.readuntil(b"\n")
    except asyncio.IncompleteReadError as exc:
        return exc.partial
    except asyncio.LimitOverrunError as exc:
        await _discard_line(reader, exc.consumed)
        raise


async def _discard_line(reader: asyncio.StreamReader, consumed: int) -> None:
    """Drop buffered input through the end of the current line."""
    while True:
        try:
            await reader.readexactly(consumed)
            await reader.readuntil(b"\n")
            return
        except asyncio.LimitOverrunError as exc:
            consumed = exc.consumed
        except asyncio.IncompleteReadError:
            return
