"""Loop controller — the explicit state machine around execute and heal.

    PREPARING ──READY──▶ AWAITING_EXECUTION ──PASS──▶ DONE
        │                    │  ▲
        │          FAIL/ERROR/TIMEOUT
        │                    ▼  │ FIXED / PARTIAL / FAILED (attempts remain)
        │                AWAITING_HEAL ──EXHAUSTED──▶ ESCALATED
        ├──SKIPPED──▶ SKIPPED
        └──GENERATION_FAILED──▶ GENERATION_FAILED

:class:`LoopState` is immutable; every transition returns a new state.
The orchestrator re-invokes the pipeline stages with the new state
each iteration, so every iteration can be observed and resumed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace

from shared.errors import InvalidTransitionError
from shared.schemas import (
    ExecutionResult,
    HealingAttempt,
    HealOutcome,
    HealStatus,
    HealStrategy,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3


# ── Phases & events ──────────────────────────────────────────────────

class Phase:
    """Loop phases."""

    PREPARING          = "PREPARING"
    AWAITING_EXECUTION = "AWAITING_EXECUTION"
    AWAITING_HEAL      = "AWAITING_HEAL"
    DONE               = "DONE"
    ESCALATED          = "ESCALATED"
    SKIPPED            = "SKIPPED"
    GENERATION_FAILED  = "GENERATION_FAILED"


TERMINAL_PHASES = frozenset({
    Phase.DONE, Phase.ESCALATED, Phase.SKIPPED, Phase.GENERATION_FAILED,
})

# phase → {event → next phase}
TRANSITIONS: dict[str, dict[str, str]] = {
    Phase.PREPARING: {
        "READY":             Phase.AWAITING_EXECUTION,
        "SKIPPED":           Phase.SKIPPED,
        "GENERATION_FAILED": Phase.GENERATION_FAILED,
    },
    Phase.AWAITING_EXECUTION: {
        "PASS":    Phase.DONE,
        "FAIL":    Phase.AWAITING_HEAL,
        "ERROR":   Phase.AWAITING_HEAL,
        "TIMEOUT": Phase.AWAITING_HEAL,
    },
    Phase.AWAITING_HEAL: {
        "FIXED":     Phase.AWAITING_EXECUTION,
        "PARTIAL":   Phase.AWAITING_EXECUTION,
        "FAILED":    Phase.AWAITING_EXECUTION,   # retry with unchanged code
        "EXHAUSTED": Phase.ESCALATED,
    },
}


# ── State ────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class LoopState:
    """Where one file's loop stands.  ``history`` only ever grows."""

    file_key: str
    attempt_number: int = 1
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    history: tuple[HealingAttempt, ...] = ()
    phase: str = Phase.PREPARING
    first_attempt: int = 1      # numbering continues across runs; the budget does not

    @property
    def terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    def advance(self, event: str) -> LoopState:
        """Apply *event*.  Raises ``InvalidTransitionError`` if the table forbids it."""
        target = TRANSITIONS.get(self.phase, {}).get(event)
        if target is None:
            raise InvalidTransitionError(self.phase, event)
        logger.debug("%s: %s --%s--> %s", self.file_key, self.phase, event, target)
        return replace(self, phase=target)

    def to_dict(self) -> dict:
        return {
            "file_key": self.file_key,
            "attempt_number": self.attempt_number,
            "first_attempt": self.first_attempt,
            "max_attempts": self.max_attempts,
            "phase": self.phase,
            "terminal": self.terminal,
            "history": [a.to_dict() for a in self.history],
        }


# ── Controller ───────────────────────────────────────────────────────

class LoopController:
    """Escalation policy plus the state transitions driven by stage results."""

    def __init__(self, max_attempts: int = DEFAULT_MAX_ATTEMPTS):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts

    def start(self, file_key: str, attempt_number: int = 1) -> LoopState:
        """New loop state.  *attempt_number* continues a persisted history."""
        return LoopState(
            file_key=file_key,
            attempt_number=attempt_number,
            max_attempts=self.max_attempts,
            first_attempt=attempt_number,
        )

    # -- Policy --------------------------------------------------------
    # Attempts are counted from *first_attempt*, the number this run began at.

    def must_escalate(self, attempt_number: int, first_attempt: int = 1) -> bool:
        """Entry guard, checked before any healing-model call."""
        return attempt_number - first_attempt + 1 > self.max_attempts

    def should_escalate(self, attempt_number: int, status: HealStatus, first_attempt: int = 1) -> bool:
        """True iff the budget is already spent, or a FAILED heal spends it."""
        used = attempt_number - first_attempt + 1
        if used > self.max_attempts:
            return True
        return status is HealStatus.FAILED and used + 1 > self.max_attempts

    # -- Transitions ---------------------------------------------------

    def on_prepared(self, state: LoopState, event: str) -> LoopState:
        return state.advance(event)

    def on_execution(self, state: LoopState, result: ExecutionResult) -> LoopState:
        return state.advance(result.status.value)

    def on_heal(self, state: LoopState, outcome: HealOutcome) -> LoopState:
        event = "EXHAUSTED" if outcome.should_escalate else outcome.status.value
        history = state.history + ((outcome.attempt,) if outcome.attempt else ())
        advanced = state.advance(event)
        return replace(advanced, attempt_number=outcome.attempt_number, history=history)


# ── Reports & messages ───────────────────────────────────────────────

def build_escalation_report(
    file_path: str,
    execution: ExecutionResult | None,
    history: list[HealingAttempt] | tuple[HealingAttempt, ...],
    attempt_number: int,
    first_attempt: int = 1,
) -> str:
    """Human-readable hand-off assembled from the full attempt history."""
    lines = [
        f"Self-healing escalation: {file_path} still failing after "
        f"{max(attempt_number - first_attempt, 0)} attempt(s)",
        "",
    ]
    if execution is not None:
        lines += [
            f"Final test status: {execution.status.value}",
            f"Failed tests: {execution.failed_tests}/{execution.total_tests}",
            "",
            "## Failure summary",
            execution.failure_summary or "No structured failure data.",
            "",
        ]

    lines.append("## Healing attempts")
    if not history:
        lines.append("No healing attempts were recorded.")
    for attempt in history:
        lines += [
            f"### Attempt {attempt.attempt_number}: {attempt.strategy.value} → {attempt.status.value} "
            f"(confidence {attempt.confidence_score}, risk {attempt.risk.value})",
            attempt.root_cause or "(no root cause recorded)",
            attempt.explanation or "(no explanation recorded)",
            "",
        ]

    lines += [
        "## Suggested review",
        "1. Check whether the failing tests make unreasonable assumptions about external dependencies.",
        f"2. Verify that the logic in `{file_path}` matches its intended behaviour.",
        "3. Consider whether the module needs hand-written mocks for its I/O.",
        "4. Check whether a recent upstream change broke this module's contract.",
    ]
    return "\n".join(lines)


def build_commit_message(
    path: str,
    attempt_number: int,
    strategy: HealStrategy,
    confidence_score: int,
) -> str:
    return (
        f"fix(selfheal): auto-heal {path} [attempt {attempt_number}]\n"
        "\n"
        f"Strategy: {strategy.value}\n"
        f"Confidence: {confidence_score}"
    )
