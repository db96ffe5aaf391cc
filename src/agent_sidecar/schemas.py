"""
Pydantic schemas for inbound protocol envelopes and engine configuration.
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from .errors import ConfigError

PermissionMode = Literal["default", "acceptEdits", "bypassPermissions", "plan"]


class Payload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class EngineConfig(Payload):
    prompt: str
    model: Optional[str] = None
    agent_name: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("agentName", "agent_name")
    )
    api_key: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("apiKey", "api_key")
    )
    cwd: str
    allowed_tools: Optional[List[str]] = Field(
        default=None, validation_alias=AliasChoices("allowedTools", "allowed_tools")
    )
    max_turns: Optional[int] = Field(
        default=None,
        gt=0,
        validation_alias=AliasChoices("maxTurns", "max_turns"),
    )
    permission_mode: Optional[PermissionMode] = Field(
        default=None,
        validation_alias=AliasChoices("permissionMode", "permission_mode"),
    )
    session_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("sessionId", "session_id")
    )
    betas: Optional[List[str]] = None
    max_thinking_tokens: Optional[int] = Field(
        default=None,
        gt=0,
        validation_alias=AliasChoices("maxThinkingTokens", "max_thinking_tokens"),
    )
    path_to_executable: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices(
            "pathToClaudeCodeExecutable", "path_to_claude_code_executable"
        ),
    )

    @field_validator("cwd")
    @classmethod
    def _cwd_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("cwd must be a non-empty path")
        return value

    @field_validator("model", "agent_name", "api_key", "session_id")
    @classmethod
    def _blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            return None
        return value

    @model_validator(mode="after")
    def _require_identity(self) -> "EngineConfig":
        if not self.model and not self.agent_name:
            raise ValueError("config requires a model or an agentName")
        return self


class AgentRequest(Payload):
    type: Literal["agent_request"]
    request_id: str = Field(min_length=1)
    config: Dict[str, Any]


class CancelRequest(Payload):
    type: Literal["cancel"]
    request_id: str = Field(min_length=1)


class ShutdownRequest(Payload):
    type: Literal["shutdown"]


class PingRequest(Payload):
    type: Literal["ping"]


class StreamStartRequest(Payload):
    type: Literal["stream_start"]
    session_id: str = Field(min_length=1)
    request_id: str = Field(min_length=1)
    config: Dict[str, Any]


class StreamMessageRequest(Payload):
    type: Literal["stream_message"]
    session_id: str = Field(min_length=1)
    request_id: str = Field(min_length=1)
    message: str = Field(validation_alias=AliasChoices("message", "user_message"))


class StreamEndRequest(Payload):
    type: Literal["stream_end"]
    session_id: str = Field(min_length=1)


def parse_engine_config(raw: Any) -> EngineConfig:
    """Validate a request's config, raising ConfigError with a readable message."""
    if isinstance(raw, EngineConfig):
        return raw
    if not isinstance(raw, dict):
        raise ConfigError("config must be an object")
    try:
        return EngineConfig.model_validate(raw)
    except ValidationError as exc:
        details = "; ".join(_describe_error(err) for err in exc.errors())
        raise ConfigError(f"Invalid config: {details}") from exc


def _describe_error(err: Dict[str, Any]) -> str:
    location = ".".join(str(part) for part in err.get("loc", ()) if part != "__root__")
    message = str(err.get("msg", "invalid value"))
    if message.startswith("Value error, "):
        message = message[len("Value error, ") :]
    return f"{location}: {message}" if location else message
