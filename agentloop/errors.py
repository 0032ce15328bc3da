"""Exception types raised by the agent runtime."""

from __future__ import annotations


class AgentLoopError(Exception):
    """Base class for all agentloop errors."""


class ConfigurationError(AgentLoopError):
    """A required setting or secret was never provided."""


class ProviderError(AgentLoopError):
    """Non-success response from a model provider."""

    def __init__(self, status_code: int, message: str, model: str | None = None) -> None:
        super().__init__(f"{status_code}: {message}")
        self.status_code = status_code
        self.message = message
        self.model = model

    @property
    def is_transient(self) -> bool:
        return 500 <= self.status_code < 600


class ToolReturnError(AgentLoopError, TypeError):
    """A tool handler returned a value outside its declared return shape."""


class UnknownEventError(AgentLoopError, TypeError):
    """A value that is not a known history event variant reached a mapper."""
