"""
Error taxonomy for the generation pipeline.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Classification of provider failures."""
    API_KEY_MISSING = "api_key_missing"
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    MALFORMED_RESPONSE = "malformed_response"
    NETWORK_ERROR = "network_error"


class VibeGenError(Exception):
    """Base class for all pipeline errors."""


class ValidationError(VibeGenError):
    """Input rejected before any work is dispatched."""


class PreconditionError(VibeGenError):
    """A command cannot run because required state is missing."""


class InvalidTransitionError(VibeGenError):
    """A command was issued from a status that does not allow it."""

    def __init__(self, current: str, command: str):
        self.current = current
        self.command = command
        super().__init__(f"Cannot run '{command}' while session is '{current}'")


class CommandInProgressError(VibeGenError):
    """A command for a phase that is already in flight."""

    def __init__(self, phase: str):
        self.phase = phase
        super().__init__(f"A '{phase}' command is already in progress")


class ProviderError(VibeGenError):
    """A classified failure of a model provider call."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        provider: Optional[str] = None,
        model: Optional[str] = None,
    ):
        self.kind = kind
        self.provider = provider
        self.model = model
        super().__init__(message)

    @property
    def retryable_with_other_provider(self) -> bool:
        return self.kind == ErrorKind.API_KEY_MISSING

    def __str__(self) -> str:
        context = "/".join(part for part in (self.provider, self.model) if part)
        message = super().__str__()
        return f"[{self.kind.value}] {context}: {message}" if context else f"[{self.kind.value}] {message}"


class PersistenceError(VibeGenError):
    """A storage write or read failed."""


class SelectorResolutionError(VibeGenError):
    """An edit operation's selector did not resolve to an element."""

    def __init__(self, selector: str, reason: str):
        self.selector = selector
        self.reason = reason
        super().__init__(f"Selector '{selector}' {reason}")


class TaskTimeoutError(VibeGenError):
    """A unit of work exceeded its per-task timeout."""

    def __init__(self, task_id: str, timeout: float):
        self.task_id = task_id
        self.timeout = timeout
        super().__init__(f"Task '{task_id}' timed out after {timeout:.0f}s")
