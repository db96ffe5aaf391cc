"""Long-lived worker that runs agent conversations for a host application."""

from .abort import AbortState, CancellationToken, create_abort_state, handle_shutdown, link_external_signal
from .dispatcher import Dispatcher
from .executor import run_agent_request
from .stream_session import SessionState, StreamSession

__all__ = [
    "AbortState",
    "CancellationToken",
    "Dispatcher",
    "SessionState",
    "StreamSession",
    "create_abort_state",
    "handle_shutdown",
    "link_external_signal",
    "run_agent_request",
]
