from typing import Optional


class SidecarError(Exception):
    """Base error for sidecar worker failures."""


class ProtocolError(SidecarError):
    """Raised when an inbound line is not a valid protocol envelope."""


class ConfigError(SidecarError):
    """Raised when worker or request configuration is invalid."""


class EngineError(SidecarError):
    """Raised when the conversation engine fails mid-call."""

    def __init__(self, message: str, *, returncode: Optional[int] = None) -> None:
        super().__init__(message)
        self.returncode = returncode


class SessionClosedError(SidecarError):
    """Raised when a message is pushed into a closed streaming session."""
