"""Services – configuration, logging and the outside-world adapters."""

from services.attempt_store import InMemoryAttemptStore, JsonlAttemptStore
from services.config import Settings, load_settings
from services.github_service import GitHubRepository, LocalRepository
from services.logging_setup import configure_logging
from services.model_client import ModelClient

__all__ = [
    "InMemoryAttemptStore",
    "JsonlAttemptStore",
    "Settings",
    "load_settings",
    "GitHubRepository",
    "LocalRepository",
    "configure_logging",
    "ModelClient",
]
