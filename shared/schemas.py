"""Shared schemas used across the pipeline stages.

Every record exposes ``to_dict()`` so results can be logged, exported
or persisted without the consumer knowing the dataclass layout.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ── Enumerations ─────────────────────────────────────────────────────

class Complexity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class Coverage(str, Enum):
    FULL = "FULL"          # every detected function is exercised
    PARTIAL = "PARTIAL"    # some functions covered, some skipped
    MINIMAL = "MINIMAL"    # happy path only, or most functions missing


class GenerationStatus(str, Enum):
    SUCCESS = "SUCCESS"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"


class ExecutionStatus(str, Enum):
    PASS = "PASS"
    FAIL = "FAIL"
    ERROR = "ERROR"
    TIMEOUT = "TIMEOUT"


class CaseStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


class HealStrategy(str, Enum):
    LOGIC_FIX = "LOGIC_FIX"
    MOCK_ADJUSTMENT = "MOCK_ADJUSTMENT"
    TYPE_FIX = "TYPE_FIX"
    IMPORT_FIX = "IMPORT_FIX"
    ASYNC_FIX = "ASYNC_FIX"
    TEST_FIX = "TEST_FIX"
    UNKNOWN = "UNKNOWN"


class Risk(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class HealStatus(str, Enum):
    FIXED = "FIXED"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"
    ESCALATED = "ESCALATED"


class ReplacementTarget(str, Enum):
    SOURCE = "source"
    TEST = "test"


# ── Source & signatures ──────────────────────────────────────────────

@dataclass(frozen=True)
class SourceUnit:
    """One file at one commit.  Replaced wholesale, never edited in place."""

    file_path: str
    content: str
    commit_ref: str = ""

    def with_content(self, content: str) -> SourceUnit:
        return replace(self, content=content)


@dataclass(frozen=True)
class FunctionSignature:
    """Heuristic inventory entry.  Prompt context only."""

    name: str
    parameter_count: int
    is_async: bool
    returns_deferred: bool
    complexity: Complexity

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "parameter_count": self.parameter_count,
            "is_async": self.is_async,
            "returns_deferred": self.returns_deferred,
            "complexity": self.complexity.value,
        }


@dataclass(frozen=True)
class EligibilityResult:
    eligible: bool
    reason: str = ""
    language: str | None = None


# ── Generation ───────────────────────────────────────────────────────

@dataclass(frozen=True)
class SkippedFunction:
    name: str
    reason: str

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "reason": self.reason}


@dataclass
class GeneratedTestSuite:
    """Validated, normalised model output for one source unit."""

    test_file_path: str
    test_code: str
    coverage: Coverage = Coverage.PARTIAL
    test_case_count: int = 0
    skipped_functions: list[SkippedFunction] = field(default_factory=list)
    quality_score: int = 70

    def to_dict(self) -> dict[str, Any]:
        return {
            "test_file_path": self.test_file_path,
            "coverage": self.coverage.value,
            "test_case_count": self.test_case_count,
            "skipped_functions": [s.to_dict() for s in self.skipped_functions],
            "quality_score": self.quality_score,
        }


@dataclass
class GenerationResult:
    status: GenerationStatus
    test_file_path: str
    suite: GeneratedTestSuite | None = None
    detected_functions: list[FunctionSignature] = field(default_factory=list)
    skip_reason: str = ""
    latency_ms: int = 0
    generated_at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "test_file_path": self.test_file_path,
            "suite": self.suite.to_dict() if self.suite else None,
            "detected_functions": [f.name for f in self.detected_functions],
            "skip_reason": self.skip_reason,
            "latency_ms": self.latency_ms,
            "generated_at": self.generated_at,
        }


# ── Execution ────────────────────────────────────────────────────────

@dataclass
class CaseResult:
    name: str
    status: CaseStatus
    duration_ms: float = 0.0
    error_message: str = ""
    error_stack: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "duration_ms": self.duration_ms,
            "error_message": self.error_message,
            "error_stack": self.error_stack,
        }


@dataclass
class SuiteResult:
    suite_name: str
    passed: int = 0
    failed: int = 0
    skipped: int = 0
    duration_ms: float = 0.0
    cases: list[CaseResult] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "suite_name": self.suite_name,
            "passed": self.passed,
            "failed": self.failed,
            "skipped": self.skipped,
            "duration_ms": self.duration_ms,
            "cases": [c.to_dict() for c in self.cases],
        }


@dataclass
class ExecutionResult:
    """Structured output from one sandbox run."""

    status: ExecutionStatus
    file_path: str
    test_file_path: str
    attempt_number: int
    total_tests: int = 0
    passed_tests: int = 0
    failed_tests: int = 0
    skipped_tests: int = 0
    duration_ms: int = 0
    suites: list[SuiteResult] = field(default_factory=list)
    raw_output: str = ""
    raw_error: str = ""
    failure_summary: str = ""
    exit_code: int | None = None
    parser: str = "none"           # "structured" | "heuristic" | "none"
    stage: str = ""                # last sandbox stage reached
    sandbox_id: str = ""           # diagnostics only; already deleted
    executed_at: str = field(default_factory=utcnow_iso)

    @property
    def passed(self) -> bool:
        return self.status is ExecutionStatus.PASS

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "file_path": self.file_path,
            "test_file_path": self.test_file_path,
            "attempt_number": self.attempt_number,
            "total_tests": self.total_tests,
            "passed_tests": self.passed_tests,
            "failed_tests": self.failed_tests,
            "skipped_tests": self.skipped_tests,
            "duration_ms": self.duration_ms,
            "suites": [s.to_dict() for s in self.suites],
            "failure_summary": self.failure_summary,
            "exit_code": self.exit_code,
            "parser": self.parser,
            "stage": self.stage,
            "sandbox_id": self.sandbox_id,
            "executed_at": self.executed_at,
        }


# ── Healing ──────────────────────────────────────────────────────────

@dataclass(frozen=True)
class HealingAttempt:
    """One audited execute-then-heal cycle for a file."""

    attempt_number: int
    strategy: HealStrategy
    status: HealStatus
    root_cause: str = ""
    explanation: str = ""
    confidence_score: int = 0
    risk: Risk = Risk.MEDIUM
    replacement_target: ReplacementTarget = ReplacementTarget.SOURCE
    replacement_code: str = ""
    affected_functions: tuple[str, ...] = ()
    commit_published: bool = False
    commit_ref: str = ""
    latency_ms: int = 0
    created_at: str = field(default_factory=utcnow_iso)

    def history_entry(self) -> str:
        """Compact text used to tell the model what has been tried."""
        text = self.explanation or self.root_cause or "No explanation recorded."
        return f"Strategy: {self.strategy.value} (status {self.status.value})\n{text}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempt_number": self.attempt_number,
            "strategy": self.strategy.value,
            "status": self.status.value,
            "root_cause": self.root_cause,
            "explanation": self.explanation,
            "confidence_score": self.confidence_score,
            "risk": self.risk.value,
            "replacement_target": self.replacement_target.value,
            "replacement_code": self.replacement_code,
            "affected_functions": list(self.affected_functions),
            "commit_published": self.commit_published,
            "commit_ref": self.commit_ref,
            "latency_ms": self.latency_ms,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HealingAttempt:
        return cls(
            attempt_number=int(data["attempt_number"]),
            strategy=HealStrategy(data.get("strategy", "UNKNOWN")),
            status=HealStatus(data["status"]),
            root_cause=data.get("root_cause", ""),
            explanation=data.get("explanation", ""),
            confidence_score=int(data.get("confidence_score", 0)),
            risk=Risk(data.get("risk", "MEDIUM")),
            replacement_target=ReplacementTarget(data.get("replacement_target", "source")),
            replacement_code=data.get("replacement_code", ""),
            affected_functions=tuple(data.get("affected_functions", ())),
            commit_published=bool(data.get("commit_published", False)),
            commit_ref=data.get("commit_ref", ""),
            latency_ms=int(data.get("latency_ms", 0)),
            created_at=data.get("created_at") or utcnow_iso(),
        )


@dataclass
class HealOutcome:
    """What one heal invocation hands back to the orchestrator."""

    status: HealStatus
    strategy: HealStrategy
    confidence_score: int
    commit_published: bool
    attempt_number: int              # already incremented
    should_escalate: bool
    updated_source_text: str
    updated_test_text: str
    risk: Risk = Risk.MEDIUM
    explanation: str = ""
    commit_ref: str = ""
    escalation_report: str = ""
    attempt: HealingAttempt | None = None   # the record appended to history

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "strategy": self.strategy.value,
            "confidence_score": self.confidence_score,
            "commit_published": self.commit_published,
            "attempt_number": self.attempt_number,
            "should_escalate": self.should_escalate,
            "risk": self.risk.value,
            "explanation": self.explanation,
            "commit_ref": self.commit_ref,
            "escalation_report": self.escalation_report,
        }
