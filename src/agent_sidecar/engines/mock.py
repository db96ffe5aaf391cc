import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Optional

from ..abort import CancellationToken
from ..errors import EngineError
from ..logging_utils import log_event
from .ports import EngineMessage, EngineOptions, Prompt

_logger = logging.getLogger(__name__)


def _result(subtype: str, *, is_error: bool, num_turns: int, **extra: Any) -> Dict[str, Any]:
    message: Dict[str, Any] = {
        "type": "result",
        "subtype": subtype,
        "is_error": is_error,
        "duration_ms": 100 if not is_error else 0,
        "duration_api_ms": 0,
        "num_turns": num_turns,
        "total_cost_usd": 0,
        "usage": {"input_tokens": 0, "output_tokens": 0},
    }
    message.update(extra)
    return message


class MockEngine:
    """Replays recorded JSONL transcripts instead of calling a real engine.

    Transcripts live at ``<templates_dir>/<agent>.jsonl``. Unknown agents
    or missing transcripts produce a single successful result so callers
    never hang waiting for one.
    """

    def __init__(
        self,
        templates_dir: Optional[Path] = None,
        *,
        delay_seconds: float = 0.1,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._templates_dir = templates_dir
        self._delay_seconds = delay_seconds
        self._logger = logger or _logger

    def template_path(self, agent: Optional[str]) -> Optional[Path]:
        if not agent or self._templates_dir is None:
            return None
        # Agent names never contain path separators; reject anything else.
        if "/" in agent or "\\" in agent or agent.startswith("."):
            return None
        return self._templates_dir / f"{agent}.jsonl"

    async def query(
        self,
        prompt: Prompt,
        options: EngineOptions,
        token: CancellationToken,
    ) -> AsyncIterator[EngineMessage]:
        if not isinstance(prompt, str):
            raise EngineError("Mock engine does not support streaming input")
        path = self.template_path(options.agent)
        if path is None or not path.is_file():
            label = f"{options.agent} completed (no template file)" if options.agent else "unknown agent, skipped"
            await asyncio.sleep(self._delay_seconds)
            yield _result("success", is_error=False, num_turns=0, result=f"Mock: {label}")
            return

        lines = [line for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]
        emitted_result = False
        for line in lines:
            if token.cancelled:
                yield _result(
                    "error_during_execution",
                    is_error=True,
                    num_turns=0,
                    errors=["Mock agent cancelled"],
                )
                return
            try:
                message = json.loads(line)
            except json.JSONDecodeError:
                log_event(
                    self._logger,
                    logging.WARNING,
                    "mock_engine.malformed_line",
                    template=str(path),
                    line=line[:100],
                )
                continue
            if not isinstance(message, dict):
                continue
            if "timestamp" in message:
                message["timestamp"] = int(time.time() * 1000)
            if message.get("type") == "result":
                emitted_result = True
            yield message
            await asyncio.sleep(self._delay_seconds)

        if not emitted_result:
            yield _result(
                "success",
                is_error=False,
                num_turns=1,
                result=f"Mock: {options.agent} completed",
            )
