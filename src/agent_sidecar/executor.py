"""Runs one request against the conversation engine."""

import logging
import time
from typing import Any, Callable, Dict, Optional, Union

from .abort import CancellationToken, create_abort_state, link_external_signal
from .config import WorkerConfig, default_worker_config
from .engines import ConversationEngine, build_engine_options
from .logging_utils import log_event
from .schemas import EngineConfig, parse_engine_config

OnMessage = Callable[[Dict[str, Any]], None]

_logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


def emit_system_event(on_message: OnMessage, subtype: str) -> None:
    """Emit a worker-synthesized progress event (not an engine message)."""
    on_message({"type": "system", "subtype": subtype, "timestamp": _now_ms()})


def stderr_event(data: str) -> Dict[str, Any]:
    return {
        "type": "system",
        "subtype": "sdk_stderr",
        "data": data.rstrip(),
        "timestamp": _now_ms(),
    }


async def run_agent_request(
    config: Union[EngineConfig, Dict[str, Any]],
    on_message: OnMessage,
    external_signal: Optional[CancellationToken] = None,
    *,
    engine: ConversationEngine,
    worker_config: Optional[WorkerConfig] = None,
) -> bool:
    """
    Stream every engine message for one request to ``on_message``.

    Engine exceptions propagate to the caller. Returns False when the call
    was aborted before the engine finished.
    """
    engine_config = parse_engine_config(config)
    state = create_abort_state()
    unlink = None
    if external_signal is not None:
        unlink = link_external_signal(state, external_signal)

    options = build_engine_options(
        engine_config,
        worker_config or default_worker_config(),
        stderr=lambda data: on_message(stderr_event(data)),
    )

    emit_system_event(on_message, "init_start")
    conversation = engine.query(engine_config.prompt, options, state.token)
    emit_system_event(on_message, "sdk_ready")

    forwarded = 0
    try:
        async for message in conversation:
            if state.aborted:
                break
            on_message(message)
            forwarded += 1
    finally:
        aclose = getattr(conversation, "aclose", None)
        if aclose is not None:
            await aclose()
        if unlink is not None:
            unlink()
    log_event(
        _logger,
        logging.INFO,
        "executor.finished",
        forwarded=forwarded,
        aborted=state.aborted,
    )
    return not state.aborted
