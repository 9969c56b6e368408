"""Attempt history stores — append-only, per-file.

Previous entries are never overwritten or cleared.  Appends are
serialised per store and rejected when the attempt number does not
strictly exceed the last recorded one for that file.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict
from pathlib import Path

from agents.base import AttemptHistory
from shared.errors import AttemptOrderError
from shared.schemas import HealingAttempt

logger = logging.getLogger(__name__)


def _check_order(file_key: str, existing: list[HealingAttempt], attempt: HealingAttempt) -> None:
    if existing and attempt.attempt_number <= existing[-1].attempt_number:
        raise AttemptOrderError(
            f"Attempt {attempt.attempt_number} for {file_key} does not follow "
            f"attempt {existing[-1].attempt_number}"
        )


class InMemoryAttemptStore(AttemptHistory):

    def __init__(self) -> None:
        self._attempts: dict[str, list[HealingAttempt]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def load(self, file_key: str) -> list[HealingAttempt]:
        async with self._lock:
            return list(self._attempts.get(file_key, []))

    async def append(self, file_key: str, attempt: HealingAttempt) -> None:
        async with self._lock:
            existing = self._attempts[file_key]
            _check_order(file_key, existing, attempt)
            existing.append(attempt)

    def to_dict(self) -> dict[str, list[dict]]:
        return {key: [a.to_dict() for a in items] for key, items in self._attempts.items()}


class JsonlAttemptStore(AttemptHistory):
    """One JSON object per line: ``{"file_key": ..., "attempt": {...}}``."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._lock = asyncio.Lock()

    async def load(self, file_key: str) -> list[HealingAttempt]:
        async with self._lock:
            return await asyncio.to_thread(self._load_sync, file_key)

    async def append(self, file_key: str, attempt: HealingAttempt) -> None:
        async with self._lock:
            existing = await asyncio.to_thread(self._load_sync, file_key)
            _check_order(file_key, existing, attempt)
            await asyncio.to_thread(self._append_sync, file_key, attempt)

    def _load_sync(self, file_key: str) -> list[HealingAttempt]:
        if not self.path.exists():
            return []
        attempts: list[HealingAttempt] = []
        with self.path.open(encoding="utf-8") as fh:
            for lineno, line in enumerate(fh, 1):
                if not line.strip():
                    continue
                try:
                    record = json.loads(line)
                    if record.get("file_key") == file_key:
                        attempts.append(HealingAttempt.from_dict(record["attempt"]))
                except (ValueError, KeyError, TypeError) as exc:
                    logger.warning("Skipping corrupt history line %d in %s: %s", lineno, self.path, exc)
        attempts.sort(key=lambda a: a.attempt_number)
        return attempts

    def _append_sync(self, file_key: str, attempt: HealingAttempt) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        line = json.dumps({"file_key": file_key, "attempt": attempt.to_dict()})
        with self.path.open("a", encoding="utf-8") as fh:
            fh.write(line + "\n")
