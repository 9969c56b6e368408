"""Capability interfaces every pipeline stage depends on.

The pipeline never talks to GitHub, a model endpoint or a database
directly.  It receives a :class:`Capabilities` bundle built once by the
entry point (or by a test) and calls these narrow interfaces.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from shared.schemas import HealingAttempt


@dataclass(frozen=True)
class ModelResponse:
    """Raw completion text plus wall-clock latency."""
    text: str
    latency_ms: int = 0


class SourceFetcher(ABC):
    """Commit-pinned read access to the repository."""

    @abstractmethod
    async def fetch_source(self, path: str, ref: str = "") -> str:
        """Return *path* as it was at *ref*.

        Raises:
            SourceFetchError: the file does not exist or cannot be read.
        """
        ...


class ModelInvoker(ABC):

    @abstractmethod
    async def invoke(
        self,
        role: str,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int,
        temperature: float,
    ) -> ModelResponse:
        """Single completion call.  Raises ``ModelInvocationError`` on transport failure."""
        ...


class AttemptHistory(ABC):
    """Append-only, per-file log of healing attempts."""

    @abstractmethod
    async def load(self, file_key: str) -> list[HealingAttempt]:
        ...

    @abstractmethod
    async def append(self, file_key: str, attempt: HealingAttempt) -> None:
        """Raises ``AttemptOrderError`` when the number does not increase."""
        ...


class FixPublisher(ABC):

    @abstractmethod
    async def publish_fix(self, path: str, content: str, message: str) -> str:
        """Write *content* to *path* and return the resulting commit ref.

        Raises:
            PublishError: the write was rejected.
        """
        ...


@dataclass
class Capabilities:
    """Everything the pipeline needs from the outside world."""
    source: SourceFetcher
    model: ModelInvoker
    history: AttemptHistory
    publisher: FixPublisher | None = None

    def __repr__(self) -> str:
        publisher = type(self.publisher).__name__ if self.publisher else None
        return (
            f"<Capabilities source={type(self.source).__name__} "
            f"model={type(self.model).__name__} "
            f"history={type(self.history).__name__} publisher={publisher}>"
        )
