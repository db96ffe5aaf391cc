from typing import Optional

from ..config import WorkerConfig
from .claude_cli import ClaudeCliEngine
from .mock import MockEngine
from .ports import (
    API_KEY_ENV,
    MAX_THINKING_TOKENS_ENV,
    ConversationEngine,
    EngineMessage,
    EngineOptions,
    Prompt,
    build_engine_options,
    user_turn,
)

__all__ = [
    "API_KEY_ENV",
    "MAX_THINKING_TOKENS_ENV",
    "ClaudeCliEngine",
    "ConversationEngine",
    "EngineMessage",
    "EngineOptions",
    "MockEngine",
    "Prompt",
    "build_engine_options",
    "create_engine",
    "user_turn",
]


def create_engine(
    worker_config: WorkerConfig, *, mock: Optional[bool] = None
) -> ConversationEngine:
    use_mock = worker_config.mock_agents if mock is None else mock
    if use_mock:
        return MockEngine(
            worker_config.mock.templates_dir,
            delay_seconds=worker_config.mock.delay_seconds,
        )
    return ClaudeCliEngine()
