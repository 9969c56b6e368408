"""Heal loop — LangGraph orchestrator over the pipeline stages.

    prepare ──▶ execute ──PASS──▶ END
                  ▲   │
                  │   └─FAIL/ERROR/TIMEOUT─▶ heal ──EXHAUSTED──▶ END
                  └──────FIXED/PARTIAL/FAILED─────┘

Each node calls one :class:`SelfHealPipeline` operation and feeds the
result to the :class:`LoopController`; the conditional edges only read
the resulting phase.  The loop always terminates: every heal advances
the attempt number, and the controller's entry guard escalates once the
budget is spent.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from langgraph.graph import END, StateGraph

from agents.healer import HealRequest
from agents.loop_controller import LoopController, LoopState, Phase
from agents.pipeline import PreparedUnit, SelfHealPipeline
from shared.schemas import ExecutionResult, HealingAttempt, HealOutcome

logger = logging.getLogger(__name__)


class LoopStatus:
    """Final status of one file's loop."""

    PASSED    = "PASSED"
    ESCALATED = "ESCALATED"
    SKIPPED   = "SKIPPED"
    FAILED    = "FAILED"


_FINAL_STATUS = {
    Phase.DONE:              LoopStatus.PASSED,
    Phase.ESCALATED:         LoopStatus.ESCALATED,
    Phase.SKIPPED:           LoopStatus.SKIPPED,
    Phase.GENERATION_FAILED: LoopStatus.FAILED,
}

# Progress callback type: (stage, status, message)
ProgressCallback = Callable[[str, str, str], None] | None


# ── Report ───────────────────────────────────────────────────────────

@dataclass
class HealLoopReport:
    """Aggregated result of one file's prepare → execute → heal loop."""

    file_path: str
    status: str
    attempts_used: int
    max_attempts: int
    reason: str = ""
    test_file_path: str = ""
    prepared: PreparedUnit | None = None
    executions: list[ExecutionResult] = field(default_factory=list)
    outcomes: list[HealOutcome] = field(default_factory=list)
    history: tuple[HealingAttempt, ...] = ()
    final_source_text: str = ""
    final_test_text: str = ""
    escalation_report: str = ""

    @property
    def passed(self) -> bool:
        return self.status == LoopStatus.PASSED

    def to_dict(self) -> dict[str, Any]:
        return {
            "file_path": self.file_path,
            "status": self.status,
            "attempts_used": self.attempts_used,
            "max_attempts": self.max_attempts,
            "reason": self.reason,
            "test_file_path": self.test_file_path,
            "prepared": self.prepared.to_dict() if self.prepared else None,
            "executions": [e.to_dict() for e in self.executions],
            "outcomes": [o.to_dict() for o in self.outcomes],
            "history": [a.to_dict() for a in self.history],
            "escalation_report": self.escalation_report,
        }


# ── Graph ────────────────────────────────────────────────────────────

def _route(state: dict[str, Any]) -> str:
    phase = state["loop"].phase
    if phase == Phase.AWAITING_EXECUTION:
        return "execute"
    if phase == Phase.AWAITING_HEAL:
        return "heal"
    return END


def _make_nodes(
    pipeline: SelfHealPipeline,
    controller: LoopController,
    on_progress: ProgressCallback,
):
    async def prepare(state: dict[str, Any]) -> dict[str, Any]:
        file_path = state["file_path"]
        _emit(on_progress, "prepare", "started", f"Generating tests for {file_path}")

        prepared = await pipeline.prepare(file_path, state.get("commit_ref", ""))
        loop = controller.on_prepared(state["loop"], prepared.status)

        _emit(on_progress, "prepare", prepared.status.lower(),
              prepared.reason or f"{prepared.test_file_path} ready")
        update = {**state, "loop": loop, "prepared": prepared}
        if prepared.ready:
            update.update(
                source=prepared.source,
                test_file_path=prepared.test_file_path,
                test_code=prepared.test_code,
            )
        return update

    async def execute(state: dict[str, Any]) -> dict[str, Any]:
        loop: LoopState = state["loop"]
        _emit(on_progress, "execute", "started",
              f"Attempt {loop.attempt_number}: running {state['test_file_path']}")

        result = await pipeline.execute(
            state["source"], state["test_file_path"], state["test_code"], loop.attempt_number,
        )
        loop = controller.on_execution(loop, result)

        _emit(on_progress, "execute", result.status.value.lower(),
              f"{result.passed_tests}/{result.total_tests} passed")
        return {
            **state,
            "loop": loop,
            "execution": result,
            "executions": [*state["executions"], result],
        }

    async def heal(state: dict[str, Any]) -> dict[str, Any]:
        loop: LoopState = state["loop"]
        _emit(on_progress, "heal", "started", f"Attempt {loop.attempt_number}: analysing failure")

        request = HealRequest(
            source=state["source"],
            test_file_path=state["test_file_path"],
            test_code=state["test_code"],
            execution=state["execution"],
            attempt_number=loop.attempt_number,
            first_attempt=loop.first_attempt,
        )
        outcome = await pipeline.heal(request)
        loop = controller.on_heal(loop, outcome)

        source = state["source"]
        if outcome.updated_source_text != source.content:
            source = source.with_content(outcome.updated_source_text)

        _emit(on_progress, "heal", outcome.status.value.lower(),
              f"{outcome.strategy.value} (confidence {outcome.confidence_score})")
        return {
            **state,
            "loop": loop,
            "source": source,
            "test_code": outcome.updated_test_text,
            "outcomes": [*state["outcomes"], outcome],
        }

    prepare.__name__ = "node_prepare"
    execute.__name__ = "node_execute"
    heal.__name__ = "node_heal"
    return prepare, execute, heal


def build_graph(
    pipeline: SelfHealPipeline,
    controller: LoopController,
    on_progress: ProgressCallback = None,
):
    """Compile the three-node StateGraph."""
    prepare, execute, heal = _make_nodes(pipeline, controller, on_progress)

    graph = StateGraph(dict)  # plain dict state
    graph.add_node("prepare", prepare)
    graph.add_node("execute", execute)
    graph.add_node("heal", heal)
    graph.set_entry_point("prepare")

    targets = {"execute": "execute", "heal": "heal", END: END}
    for node in ("prepare", "execute", "heal"):
        graph.add_conditional_edges(node, _route, targets)

    return graph.compile()


# ── Main entry ───────────────────────────────────────────────────────

async def run_heal_loop(
    pipeline: SelfHealPipeline,
    file_path: str,
    commit_ref: str = "",
    on_progress: ProgressCallback = None,
) -> HealLoopReport:
    """Generate, execute and heal tests for *file_path* until PASS or escalation.

    Args:
        pipeline:     The stage operations, with capabilities injected.
        file_path:    Repository-relative source path.
        commit_ref:   Commit to pin every source read to (empty → working tree / HEAD).
        on_progress:  Optional callback(stage, status, message).

    Returns:
        HealLoopReport with every execution and heal outcome.
    """
    controller = pipeline.controller
    max_attempts = controller.max_attempts

    _emit(on_progress, "heal_loop", "started",
          f"Self-heal loop for {file_path} (max {max_attempts} attempts)")
    logger.info("═══ Self-heal loop — %s (max %d attempts) ═══", file_path, max_attempts)

    initial: dict[str, Any] = {
        "file_path": file_path,
        "commit_ref": commit_ref,
        "loop": controller.start(file_path, await pipeline.next_attempt_number(file_path)),
        "executions": [],
        "outcomes": [],
    }

    compiled = build_graph(pipeline, controller, on_progress)
    # prepare + (execute, heal) per attempt + the escalating heal
    recursion_limit = 2 * max_attempts + 10
    final = await compiled.ainvoke(initial, {"recursion_limit": recursion_limit})

    report = _build_report(final, max_attempts)
    logger.info(
        "Self-heal loop for %s finished: %s after %d attempt(s)",
        file_path, report.status, report.attempts_used,
    )
    _emit(on_progress, "heal_loop", "completed",
          f"{report.status}: {report.attempts_used} attempt(s)")
    return report


def _build_report(final: dict[str, Any], max_attempts: int) -> HealLoopReport:
    loop: LoopState = final["loop"]
    prepared: PreparedUnit | None = final.get("prepared")
    outcomes: list[HealOutcome] = final["outcomes"]
    source = final.get("source")

    status = _FINAL_STATUS.get(loop.phase, LoopStatus.FAILED)
    reason = ""
    if status in (LoopStatus.SKIPPED, LoopStatus.FAILED) and prepared is not None:
        reason = prepared.reason
    elif status == LoopStatus.ESCALATED and outcomes:
        reason = outcomes[-1].explanation.splitlines()[0] if outcomes[-1].explanation else ""

    return HealLoopReport(
        file_path=final["file_path"],
        status=status,
        attempts_used=len(final["executions"]),
        max_attempts=max_attempts,
        reason=reason,
        test_file_path=final.get("test_file_path", ""),
        prepared=prepared,
        executions=final["executions"],
        outcomes=outcomes,
        history=loop.history,
        final_source_text=source.content if source else "",
        final_test_text=final.get("test_code", ""),
        escalation_report=outcomes[-1].escalation_report if outcomes else "",
    )


# ── Progress helper ──────────────────────────────────────────────────

def _emit(
    callback: ProgressCallback,
    stage: str,
    status: str,
    message: str,
) -> None:
    if callback is not None:
        try:
            callback(stage, status, message)
        except Exception:
            logger.debug("Progress callback raised; ignoring", exc_info=True)
