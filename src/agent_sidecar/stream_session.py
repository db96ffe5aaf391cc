"""Multi-turn streaming sessions.

A session keeps one engine call open across many user turns. The engine
pulls turns from an async generator; the host pushes them via ``push``.
The two sides meet at a single pending-consumer future, with a FIFO queue
for turns pushed while no consumer is parked.

State machine::

    STARTING -> DELIVERING -> AWAITING_INPUT -> DELIVERING -> ... -> CLOSED
"""

import asyncio
import collections
import enum
import logging
from typing import Any, AsyncIterator, Callable, Deque, Dict, Optional, Union

from .abort import CancellationToken, create_abort_state, link_external_signal
from .config import WorkerConfig, default_worker_config
from .engines import ConversationEngine, build_engine_options, user_turn
from .errors import SessionClosedError
from .executor import emit_system_event, stderr_event
from .logging_utils import log_event
from .schemas import EngineConfig

SessionSink = Callable[[str, Dict[str, Any]], None]

_logger = logging.getLogger(__name__)


class SessionState(str, enum.Enum):
    STARTING = "starting"
    AWAITING_INPUT = "awaiting_input"
    DELIVERING = "delivering"
    CLOSED = "closed"


class _CloseSentinel:
    pass


_CLOSE = _CloseSentinel()

# Stop reason that means the assistant paused to invoke a tool; every other
# stop reason ends the turn.
_TOOL_USE_STOP_REASON = "tool_use"


def is_turn_complete(message: Dict[str, Any]) -> bool:
    if message.get("type") != "assistant":
        return False
    inner = message.get("message")
    if not isinstance(inner, dict):
        return False
    stop_reason = inner.get("stop_reason")
    return stop_reason is not None and stop_reason != _TOOL_USE_STOP_REASON


class StreamSession:
    def __init__(
        self,
        session_id: str,
        first_request_id: str,
        config: EngineConfig,
        on_message: SessionSink,
        external_signal: Optional[CancellationToken] = None,
        *,
        engine: ConversationEngine,
        worker_config: Optional[WorkerConfig] = None,
        mock_mode: bool = False,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.session_id = session_id
        self._current_request_id = first_request_id
        self._config = config
        self._on_message = on_message
        self._external_signal = external_signal
        self._engine = engine
        self._worker_config = worker_config or default_worker_config()
        self._mock_mode = mock_mode
        self._logger = logger or _logger

        self._pending: Optional[asyncio.Future] = None
        self._queue: Deque[str] = collections.deque()
        self._closed = False
        self._task: Optional[asyncio.Task] = None
        self.state = SessionState.STARTING

    @property
    def current_request_id(self) -> str:
        return self._current_request_id

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task

    def start(self) -> asyncio.Task:
        """Start the engine call in the background."""
        if self._task is None:
            self._task = asyncio.create_task(
                self._run_query(), name=f"stream-session:{self.session_id}"
            )
        return self._task

    def push(self, request_id: str, message: str) -> None:
        """
        Deliver the next user turn. Output produced from now on is tagged
        with ``request_id``, even output still flowing from an earlier turn.
        """
        if self._closed:
            raise SessionClosedError(f"StreamSession {self.session_id} is closed")
        self._current_request_id = request_id
        pending = self._pending
        if pending is not None and not pending.done():
            self._pending = None
            pending.set_result(message)
            return
        self._queue.append(message)

    def close(self) -> None:
        """End the session; idempotent. A parked consumer is released once."""
        if self._closed:
            return
        self._closed = True
        self.state = SessionState.CLOSED
        pending = self._pending
        self._pending = None
        if pending is not None and not pending.done():
            pending.set_result(_CLOSE)

    async def wait_closed(self) -> None:
        if self._task is not None:
            await asyncio.wait({self._task})

    def _emit(self, message: Dict[str, Any]) -> None:
        self._on_message(self._current_request_id, message)

    async def _input_turns(self) -> AsyncIterator[Dict[str, Any]]:
        self.state = SessionState.DELIVERING
        yield user_turn(self._config.prompt)

        while not self._closed:
            next_message: Union[str, _CloseSentinel]
            if self._queue:
                # Pushed before we got here; never wait for it again.
                next_message = self._queue.popleft()
            else:
                self.state = SessionState.AWAITING_INPUT
                waiter = asyncio.get_running_loop().create_future()
                self._pending = waiter
                try:
                    next_message = await waiter
                finally:
                    if self._pending is waiter:
                        self._pending = None
            if isinstance(next_message, _CloseSentinel) or self._closed:
                return
            self.state = SessionState.DELIVERING
            yield user_turn(next_message)

    async def _run_query(self) -> None:
        if self._mock_mode:
            log_event(
                self._logger,
                logging.WARNING,
                "stream_session.mock_unsupported",
                session_id=self.session_id,
            )
            self._emit(
                {
                    "type": "error",
                    "message": "Streaming sessions are not supported in mock mode",
                }
            )
            self._emit({"type": "turn_complete"})
            self.close()
            return

        state = create_abort_state()
        unlink = None
        if self._external_signal is not None:
            unlink = link_external_signal(state, self._external_signal)
        # An aborted session must also release a parked pull.
        state.token.add_listener(self.close)

        options = build_engine_options(
            self._config,
            self._worker_config,
            stderr=lambda data: self._emit(stderr_event(data)),
        )

        emit_system_event(self._emit, "init_start")
        log_event(
            self._logger,
            logging.INFO,
            "stream_session.started",
            session_id=self.session_id,
            request_id=self._current_request_id,
        )
        turns = self._input_turns()
        conversation = self._engine.query(turns, options, state.token)
        emit_system_event(self._emit, "sdk_ready")

        try:
            async for message in conversation:
                if state.aborted or self._closed:
                    break
                self._emit(message)
                if is_turn_complete(message):
                    self._emit({"type": "turn_complete"})
        except Exception as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "stream_session.query_failed",
                session_id=self.session_id,
                exc=exc,
            )
            self._emit({"type": "error", "message": str(exc) or type(exc).__name__})
        finally:
            aclose = getattr(conversation, "aclose", None)
            if aclose is not None:
                await aclose()
            await turns.aclose()
            if unlink is not None:
                unlink()

        if not self._closed:
            log_event(
                self._logger,
                logging.INFO,
                "stream_session.exhausted",
                session_id=self.session_id,
            )
            self._emit({"type": "session_exhausted", "session_id": self.session_id})
            self.close()
        self.state = SessionState.CLOSED
        log_event(self._logger, logging.INFO, "stream_session.ended", session_id=self.session_id)
