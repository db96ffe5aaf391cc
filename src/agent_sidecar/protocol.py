"""Line protocol spoken with the host over stdin/stdout.

Each direction carries exactly one compact JSON object per line.
"""

from __future__ import annotations

import json
import sys
import threading
from typing import Annotated, Any, Callable, Dict, Optional, TextIO, Union

from pydantic import Field, TypeAdapter, ValidationError

from .errors import ProtocolError
from .schemas import (
    AgentRequest,
    CancelRequest,
    PingRequest,
    ShutdownRequest,
    StreamEndRequest,
    StreamMessageRequest,
    StreamStartRequest,
)

IncomingMessage = Annotated[
    Union[
        AgentRequest,
        CancelRequest,
        ShutdownRequest,
        PingRequest,
        StreamStartRequest,
        StreamMessageRequest,
        StreamEndRequest,
    ],
    Field(discriminator="type"),
]

_INCOMING = TypeAdapter(IncomingMessage)
_ECHO_LIMIT = 200

Message = Dict[str, Any]
MessageSink = Callable[[Message], None]


def parse_incoming_message(line: Union[str, bytes]) -> IncomingMessage:
    """Parse and validate one inbound line, raising ProtocolError when it is unusable."""
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    trimmed = line.strip()
    if not trimmed:
        raise ProtocolError("Unrecognized input: ")
    try:
        parsed = json.loads(trimmed)
    except json.JSONDecodeError as exc:
        raise ProtocolError(_unrecognized(trimmed)) from exc
    if not isinstance(parsed, dict):
        raise ProtocolError(_unrecognized(trimmed))
    try:
        return _INCOMING.validate_python(parsed)
    except ValidationError as exc:
        raise ProtocolError(_unrecognized(trimmed)) from exc


def _unrecognized(text: str) -> str:
    return f"Unrecognized input: {text[:_ECHO_LIMIT]}"


def wrap_with_request_id(request_id: str, message: Message) -> Message:
    """Tag an outbound message; request_id is always the first key."""
    wrapped: Message = {"request_id": request_id}
    for key, value in message.items():
        if key != "request_id":
            wrapped[key] = value
    return wrapped


def ready_message() -> Message:
    return {"type": "sidecar_ready"}


def pong_message() -> Message:
    return {"type": "pong"}


def error_message(message: str) -> Message:
    return {"type": "error", "message": message}


def request_complete_message(request_id: str) -> Message:
    return {"request_id": request_id, "type": "request_complete"}


class JsonLineWriter:
    """Writes protocol lines to a text stream, one flushed JSON object per line."""

    def __init__(self, stream: Optional[TextIO] = None) -> None:
        self._stream = stream
        self._lock = threading.Lock()

    def __call__(self, message: Message) -> None:
        self.write(message)

    def write(self, message: Message) -> None:
        stream = self._stream or sys.stdout
        payload = json.dumps(message, separators=(",", ":"), ensure_ascii=False, default=str)
        with self._lock:
            stream.write(payload + "\n")
            stream.flush()
