"""Self-heal pipeline — the three stage operations an orchestrator calls.

  1. ``prepare``  fetch the source at a commit, check eligibility, scan
                  signatures, generate a test suite (one model call)
  2. ``execute``  run the suite in a fresh sandbox
  3. ``heal``     guard → history → analyse → decide → publish → record

Every stage resolves recoverable problems into a typed status.  Only
configuration and programming errors propagate.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from agents.base import Capabilities
from agents.eligibility import check_eligibility
from agents.generator import TestGenerator
from agents.healer import HealingAnalyzer, HealRequest, decide_status
from agents.loop_controller import LoopController, build_commit_message, build_escalation_report
from agents.signatures import extract_signatures
from sandbox.executor import SandboxExecutor
from shared.errors import AttemptOrderError, ModelInvocationError, PublishError, SourceFetchError
from shared.schemas import (
    EligibilityResult,
    ExecutionResult,
    FunctionSignature,
    GenerationResult,
    GenerationStatus,
    HealingAttempt,
    HealOutcome,
    HealStatus,
    HealStrategy,
    ReplacementTarget,
    Risk,
    SourceUnit,
)

logger = logging.getLogger(__name__)


class PrepareStatus:
    READY = "READY"
    SKIPPED = "SKIPPED"
    GENERATION_FAILED = "GENERATION_FAILED"


@dataclass
class PreparedUnit:
    """Result of the prepare stage for one file."""

    file_path: str
    status: str
    reason: str = ""
    source: SourceUnit | None = None
    eligibility: EligibilityResult | None = None
    signatures: list[FunctionSignature] = field(default_factory=list)
    generation: GenerationResult | None = None

    @property
    def ready(self) -> bool:
        return self.status == PrepareStatus.READY

    @property
    def test_file_path(self) -> str:
        return self.generation.test_file_path if self.generation else ""

    @property
    def test_code(self) -> str:
        if self.generation and self.generation.suite:
            return self.generation.suite.test_code
        return ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "file_path": self.file_path,
            "status": self.status,
            "reason": self.reason,
            "commit_ref": self.source.commit_ref if self.source else "",
            "signatures": [s.to_dict() for s in self.signatures],
            "generation": self.generation.to_dict() if self.generation else None,
        }


class SelfHealPipeline:
    """Stateless between calls: all loop state travels in the arguments."""

    def __init__(
        self,
        capabilities: Capabilities,
        executor: SandboxExecutor | None = None,
        controller: LoopController | None = None,
        generator: TestGenerator | None = None,
        analyzer: HealingAnalyzer | None = None,
    ):
        self.capabilities = capabilities
        self.executor = executor or SandboxExecutor()
        self.controller = controller or LoopController()
        self.generator = generator or TestGenerator(capabilities.model)
        self.analyzer = analyzer or HealingAnalyzer(capabilities.model)

    @property
    def max_attempts(self) -> int:
        return self.controller.max_attempts

    # ── 1. Prepare ───────────────────────────────────────────────────

    async def prepare(self, file_path: str, commit_ref: str = "") -> PreparedUnit:
        try:
            content = await self.capabilities.source.fetch_source(file_path, commit_ref)
        except SourceFetchError as exc:
            logger.error("Could not fetch %s: %s", file_path, exc)
            return PreparedUnit(
                file_path=file_path,
                status=PrepareStatus.GENERATION_FAILED,
                reason=str(exc),
            )

        source = SourceUnit(file_path=file_path, content=content, commit_ref=commit_ref)
        eligibility = check_eligibility(file_path, content)
        if not eligibility.eligible:
            return PreparedUnit(
                file_path=file_path,
                status=PrepareStatus.SKIPPED,
                reason=eligibility.reason,
                source=source,
                eligibility=eligibility,
            )

        signatures = extract_signatures(content, eligibility.language or "")
        logger.info(
            "Detected %d exported function(s) in %s: %s",
            len(signatures), file_path, ", ".join(s.name for s in signatures) or "(none)",
        )

        generation = await self.generator.generate(source, signatures)
        status = {
            GenerationStatus.SUCCESS: PrepareStatus.READY,
            GenerationStatus.SKIPPED: PrepareStatus.SKIPPED,
            GenerationStatus.FAILED: PrepareStatus.GENERATION_FAILED,
        }[generation.status]
        return PreparedUnit(
            file_path=file_path,
            status=status,
            reason=generation.skip_reason,
            source=source,
            eligibility=eligibility,
            signatures=signatures,
            generation=generation,
        )

    # ── 2. Execute ───────────────────────────────────────────────────

    async def execute(
        self,
        source: SourceUnit,
        test_file_path: str,
        test_code: str,
        attempt_number: int,
    ) -> ExecutionResult:
        return await self.executor.run(source, test_file_path, test_code, attempt_number)

    async def next_attempt_number(self, file_key: str) -> int:
        """First attempt number for a new run: one past the last recorded attempt."""
        history = await self._load_history(file_key)
        return max((a.attempt_number for a in history), default=0) + 1

    # ── 3. Heal ──────────────────────────────────────────────────────

    async def heal(self, request: HealRequest) -> HealOutcome:
        """One healing invocation.  The returned attempt number is always input + 1."""
        source = request.source
        file_key = source.file_path
        attempt_number = request.attempt_number

        logger.info(
            "Heal invoked for %s | attempt %d/%d | test status %s",
            file_key, attempt_number, self.max_attempts, request.execution.status.value,
        )

        # Guard before any model call
        if self.controller.must_escalate(attempt_number, request.first_attempt):
            return await self._escalate(request)

        history = await self._load_history(file_key)

        try:
            analysis = await self.analyzer.analyze(request, history)
        except ModelInvocationError as exc:
            logger.error("Healing model call for %s failed: %s", file_key, exc)
            explanation = (
                f"Healing model invocation failed: {exc.reason}. "
                "No fix was attempted; the next attempt reruns the unchanged code."
            )
            attempt = HealingAttempt(
                attempt_number=attempt_number,
                strategy=HealStrategy.UNKNOWN,
                status=HealStatus.FAILED,
                root_cause="Healing model invocation error",
                explanation=explanation,
                confidence_score=0,
                risk=Risk.LOW,
            )
            return await self._finish(request, attempt, history)

        status = decide_status(analysis, source.content, request.test_code)
        target = analysis.replacement_target
        code = analysis.replacement_code

        commit_ref = ""
        if status in (HealStatus.FIXED, HealStatus.PARTIAL):
            target_path = (
                request.test_file_path if target is ReplacementTarget.TEST else file_key
            )
            commit_ref = await self._publish(
                target_path, code, attempt_number, analysis.strategy, analysis.confidence_score,
            )

        attempt = HealingAttempt(
            attempt_number=attempt_number,
            strategy=analysis.strategy,
            status=status,
            root_cause=analysis.root_cause,
            explanation=analysis.explanation or analysis.root_cause or "No explanation generated.",
            confidence_score=analysis.confidence_score,
            risk=analysis.risk,
            replacement_target=target,
            replacement_code=code if status is not HealStatus.FAILED else "",
            affected_functions=analysis.affected_functions,
            commit_published=bool(commit_ref),
            commit_ref=commit_ref,
            latency_ms=analysis.latency_ms,
        )
        return await self._finish(request, attempt, history)

    # -- heal helpers --------------------------------------------------

    async def _escalate(self, request: HealRequest) -> HealOutcome:
        file_key = request.source.file_path
        logger.warning(
            "Attempt %d exceeds max %d for %s — escalating without a model call",
            request.attempt_number, self.max_attempts, file_key,
        )
        history = await self._load_history(file_key)
        report = build_escalation_report(
            file_key, request.execution, history, request.attempt_number, request.first_attempt,
        )
        attempt = HealingAttempt(
            attempt_number=request.attempt_number,
            strategy=HealStrategy.UNKNOWN,
            status=HealStatus.ESCALATED,
            root_cause="Maximum healing attempts exhausted",
            explanation=report,
            confidence_score=0,
            risk=Risk.HIGH,
        )
        await self._record(file_key, attempt)
        return HealOutcome(
            status=HealStatus.ESCALATED,
            strategy=HealStrategy.UNKNOWN,
            confidence_score=0,
            commit_published=False,
            attempt_number=request.attempt_number + 1,
            should_escalate=True,
            updated_source_text=request.source.content,
            updated_test_text=request.test_code,
            risk=Risk.HIGH,
            explanation=report,
            escalation_report=report,
            attempt=attempt,
        )

    async def _finish(
        self,
        request: HealRequest,
        attempt: HealingAttempt,
        history: list[HealingAttempt],
    ) -> HealOutcome:
        file_key = request.source.file_path
        await self._record(file_key, attempt)

        source_text = request.source.content
        test_text = request.test_code
        if attempt.status in (HealStatus.FIXED, HealStatus.PARTIAL):
            # Applied in memory even when publishing failed
            if attempt.replacement_target is ReplacementTarget.TEST:
                test_text = attempt.replacement_code
            else:
                source_text = attempt.replacement_code

        should_escalate = self.controller.should_escalate(
            request.attempt_number, attempt.status, request.first_attempt,
        )
        report = ""
        if should_escalate:
            report = build_escalation_report(
                file_key, request.execution, [*history, attempt],
                request.attempt_number + 1, request.first_attempt,
            )

        logger.info(
            "Heal complete for %s | status=%s strategy=%s confidence=%d published=%s "
            "| next attempt %d | escalate=%s",
            file_key, attempt.status.value, attempt.strategy.value, attempt.confidence_score,
            attempt.commit_published, request.attempt_number + 1, should_escalate,
        )
        return HealOutcome(
            status=attempt.status,
            strategy=attempt.strategy,
            confidence_score=attempt.confidence_score,
            commit_published=attempt.commit_published,
            attempt_number=request.attempt_number + 1,
            should_escalate=should_escalate,
            updated_source_text=source_text,
            updated_test_text=test_text,
            risk=attempt.risk,
            explanation=attempt.explanation,
            commit_ref=attempt.commit_ref,
            escalation_report=report,
            attempt=attempt,
        )

    async def _load_history(self, file_key: str) -> list[HealingAttempt]:
        try:
            return await self.capabilities.history.load(file_key)
        except OSError as exc:
            logger.warning("Attempt history for %s unavailable: %s", file_key, exc)
            return []

    async def _record(self, file_key: str, attempt: HealingAttempt) -> None:
        try:
            await self.capabilities.history.append(file_key, attempt)
        except OSError as exc:
            logger.warning("Could not record attempt %d for %s: %s", attempt.attempt_number, file_key, exc)
        except AttemptOrderError as exc:
            # a concurrent run on the same file
            logger.error("Attempt %d for %s not recorded: %s", attempt.attempt_number, file_key, exc)

    async def _publish(
        self,
        path: str,
        content: str,
        attempt_number: int,
        strategy: HealStrategy,
        confidence_score: int,
    ) -> str:
        """Return the commit ref, or ``""`` when publishing is off or failed."""
        publisher = self.capabilities.publisher
        if publisher is None:
            logger.info("No publisher configured; keeping the fix for %s in memory", path)
            return ""
        message = build_commit_message(path, attempt_number, strategy, confidence_score)
        try:
            return await publisher.publish_fix(path, content, message)
        except PublishError as exc:
            logger.warning("Publishing fix for %s failed (continuing in memory): %s", path, exc)
            return ""
