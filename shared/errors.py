"""Exception hierarchy for the capability boundaries.

Recoverable conditions inside the pipeline resolve into typed statuses
(SKIPPED / FAILED / ERROR / TIMEOUT / ESCALATED).  These exceptions are
raised only at the edges (model transport, repository access, publish)
and caught by the stage that owns them; configuration and programming
errors are the only ones allowed to escape.
"""

from __future__ import annotations


class SelfHealError(Exception):
    """Base class for every error raised by this package."""


class ConfigurationError(SelfHealError):
    """Settings could not be loaded or failed validation at startup."""


class ModelInvocationError(SelfHealError):
    """The generative-model call failed (HTTP error, timeout, bad payload).

    The message names the transport failure only; it never carries
    request headers or credentials.
    """

    def __init__(self, role: str, reason: str, status_code: int | None = None):
        self.role = role
        self.reason = reason
        self.status_code = status_code
        super().__init__(f"{role} model invocation failed: {reason}")


class SourceFetchError(SelfHealError):
    """Repository content could not be read at the requested ref."""


class PublishError(SelfHealError):
    """A fix could not be written back to the source repository."""


class GenerationValidationError(SelfHealError):
    """Generated test output failed structural validation."""


class SandboxSetupError(SelfHealError):
    """The sandbox workspace could not be materialised."""


class InvalidTransitionError(SelfHealError):
    """The loop controller was asked for a transition the state machine forbids."""

    def __init__(self, phase: str, event: str):
        self.phase = phase
        self.event = event
        super().__init__(f"No transition from {phase} on {event}")


class AttemptOrderError(SelfHealError):
    """An attempt was appended out of order (numbers must strictly increase)."""
