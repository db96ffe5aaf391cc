"""Ports for the conversation engine.

The worker treats the engine as a black box: it receives options plus a
prompt (a string, or an async iterator of user turns) and yields opaque
JSON-compatible messages until it finishes or raises.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Protocol, Union

from ..abort import CancellationToken
from ..config import WorkerConfig
from ..schemas import EngineConfig

EngineMessage = Dict[str, Any]
UserTurn = Dict[str, Any]
Prompt = Union[str, AsyncIterator[UserTurn]]
StderrHandler = Callable[[str], None]

API_KEY_ENV = "ANTHROPIC_API_KEY"
MAX_THINKING_TOKENS_ENV = "MAX_THINKING_TOKENS"


@dataclass
class EngineOptions:
    cwd: str
    model: Optional[str] = None
    agent: Optional[str] = None
    allowed_tools: Optional[List[str]] = None
    max_turns: int = 50
    permission_mode: str = "bypassPermissions"
    resume: Optional[str] = None
    betas: Optional[List[str]] = None
    setting_sources: List[str] = field(default_factory=lambda: ["project"])
    executable: str = "claude"
    extra_args: List[str] = field(default_factory=list)
    # Call-scoped environment overrides; the credential travels here.
    env: Dict[str, str] = field(default_factory=dict)
    stderr: Optional[StderrHandler] = None


class ConversationEngine(Protocol):
    def query(
        self,
        prompt: Prompt,
        options: EngineOptions,
        token: CancellationToken,
    ) -> AsyncIterator[EngineMessage]:
        ...


def user_turn(content: str) -> UserTurn:
    return {"type": "user", "message": {"role": "user", "content": content}}


def build_engine_options(
    config: EngineConfig,
    worker_config: WorkerConfig,
    *,
    stderr: Optional[StderrHandler] = None,
) -> EngineOptions:
    """
    Translate a request config into engine options.

    Agent/model resolution: an agent alone uses the agent's own model, a
    model alone selects the model, and both together let the model
    override the agent's default.
    """
    env: Dict[str, str] = {}
    if config.api_key:
        env[API_KEY_ENV] = config.api_key
    if config.max_thinking_tokens:
        env[MAX_THINKING_TOKENS_ENV] = str(config.max_thinking_tokens)
    return EngineOptions(
        cwd=config.cwd,
        model=config.model,
        agent=config.agent_name,
        allowed_tools=list(config.allowed_tools) if config.allowed_tools is not None else None,
        max_turns=config.max_turns or worker_config.default_max_turns,
        permission_mode=config.permission_mode or worker_config.default_permission_mode,
        resume=config.session_id,
        betas=list(config.betas) if config.betas else None,
        setting_sources=list(worker_config.setting_sources),
        executable=config.path_to_executable or worker_config.engine_executable,
        extra_args=list(worker_config.engine_extra_args),
        env=env,
        stderr=stderr,
    )
