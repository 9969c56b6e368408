"""Tests for the loop controller state machine and escalation policy.

Run:
    python -m pytest agents/test_loop_controller.py -v
"""

from __future__ import annotations

import sys
from dataclasses import FrozenInstanceError
from pathlib import Path

import pytest

_ROOT = Path(__file__).resolve().parent.parent
if str(_ROOT) not in sys.path:
    sys.path.insert(0, str(_ROOT))

from agents.loop_controller import (
    TERMINAL_PHASES,
    TRANSITIONS,
    LoopController,
    LoopState,
    Phase,
    build_commit_message,
    build_escalation_report,
)
from shared.errors import InvalidTransitionError
from shared.schemas import (
    ExecutionResult,
    ExecutionStatus,
    HealingAttempt,
    HealOutcome,
    HealStatus,
    HealStrategy,
)


def _execution(status: ExecutionStatus, attempt: int = 1) -> ExecutionResult:
    return ExecutionResult(
        status=status,
        file_path="src/a.ts",
        test_file_path="tests/a.test.ts",
        attempt_number=attempt,
        total_tests=5,
        failed_tests=1 if status is not ExecutionStatus.PASS else 0,
        failure_summary='[Failure 1] Test: "adds"',
    )


def _outcome(status: HealStatus, attempt_in: int, escalate: bool) -> HealOutcome:
    record = HealingAttempt(attempt_in, HealStrategy.LOGIC_FIX, status, explanation=f"try {attempt_in}")
    return HealOutcome(
        status=status,
        strategy=HealStrategy.LOGIC_FIX,
        confidence_score=80,
        commit_published=False,
        attempt_number=attempt_in + 1,
        should_escalate=escalate,
        updated_source_text="",
        updated_test_text="",
        attempt=record,
    )


class TestStateMachine:

    def test_transition_table_shape(self):
        assert set(TRANSITIONS) == {Phase.PREPARING, Phase.AWAITING_EXECUTION, Phase.AWAITING_HEAL}
        assert not TERMINAL_PHASES & set(TRANSITIONS)

    @pytest.mark.parametrize("status,phase", [
        (ExecutionStatus.PASS, Phase.DONE),
        (ExecutionStatus.FAIL, Phase.AWAITING_HEAL),
        (ExecutionStatus.ERROR, Phase.AWAITING_HEAL),
        (ExecutionStatus.TIMEOUT, Phase.AWAITING_HEAL),
    ])
    def test_execution_transitions(self, status, phase):
        controller = LoopController(3)
        state = controller.on_prepared(controller.start("src/a.ts"), "READY")
        assert state.phase == Phase.AWAITING_EXECUTION
        assert controller.on_execution(state, _execution(status)).phase == phase

    @pytest.mark.parametrize("event,phase", [
        ("SKIPPED", Phase.SKIPPED),
        ("GENERATION_FAILED", Phase.GENERATION_FAILED),
    ])
    def test_prepare_terminals(self, event, phase):
        controller = LoopController()
        state = controller.on_prepared(controller.start("x"), event)
        assert state.phase == phase
        assert state.terminal

    def test_heal_advances_attempt_and_history(self):
        controller = LoopController(3)
        state = controller.on_prepared(controller.start("src/a.ts"), "READY")
        state = controller.on_execution(state, _execution(ExecutionStatus.FAIL))

        fixed = controller.on_heal(state, _outcome(HealStatus.FIXED, 1, False))
        assert fixed.phase == Phase.AWAITING_EXECUTION
        assert fixed.attempt_number == 2
        assert [a.attempt_number for a in fixed.history] == [1]
        # the earlier state is untouched
        assert state.attempt_number == 1
        assert state.history == ()

    def test_failed_with_attempts_remaining_retries(self):
        controller = LoopController(3)
        state = controller.on_execution(
            controller.on_prepared(controller.start("f"), "READY"), _execution(ExecutionStatus.FAIL),
        )
        assert controller.on_heal(state, _outcome(HealStatus.FAILED, 1, False)).phase == Phase.AWAITING_EXECUTION

    def test_exhausted_escalates(self):
        controller = LoopController(3)
        state = controller.start("f", attempt_number=3)
        state = controller.on_execution(controller.on_prepared(state, "READY"), _execution(ExecutionStatus.FAIL, 3))
        escalated = controller.on_heal(state, _outcome(HealStatus.FAILED, 3, True))
        assert escalated.phase == Phase.ESCALATED
        assert escalated.terminal
        assert escalated.attempt_number == 4

    @pytest.mark.parametrize("phase,event", [
        (Phase.PREPARING, "PASS"),
        (Phase.AWAITING_EXECUTION, "FIXED"),
        (Phase.AWAITING_HEAL, "PASS"),
        (Phase.DONE, "FAIL"),
        (Phase.ESCALATED, "FIXED"),
    ])
    def test_illegal_transitions_raise(self, phase, event):
        state = LoopState(file_key="f", phase=phase)
        with pytest.raises(InvalidTransitionError):
            state.advance(event)

    def test_state_is_frozen(self):
        state = LoopController().start("f")
        with pytest.raises(FrozenInstanceError):
            state.attempt_number = 9  # type: ignore[misc]

    def test_rejects_zero_budget(self):
        with pytest.raises(ValueError):
            LoopController(0)


class TestEscalationPolicy:

    @pytest.mark.parametrize("attempt", [1, 2, 3, 4, 5])
    @pytest.mark.parametrize("status", list(HealStatus))
    def test_should_escalate_truth_table(self, attempt, status):
        controller = LoopController(3)
        expected = attempt > 3 or (status is HealStatus.FAILED and attempt + 1 > 3)
        assert controller.should_escalate(attempt, status) is expected

    def test_must_escalate_guard(self):
        controller = LoopController(3)
        assert not controller.must_escalate(3)
        assert controller.must_escalate(4)

    def test_budget_counts_from_the_first_attempt_of_the_run(self):
        controller = LoopController(3)
        state = controller.start("f", attempt_number=7)
        assert state.first_attempt == 7
        assert not controller.must_escalate(9, state.first_attempt)
        assert controller.must_escalate(10, state.first_attempt)
        assert not controller.should_escalate(8, HealStatus.FAILED, state.first_attempt)
        assert controller.should_escalate(9, HealStatus.FAILED, state.first_attempt)
        assert not controller.should_escalate(9, HealStatus.FIXED, state.first_attempt)

    def test_first_attempt_survives_transitions(self):
        controller = LoopController(3)
        state = controller.on_prepared(controller.start("f", attempt_number=4), "READY")
        state = controller.on_execution(state, _execution(ExecutionStatus.FAIL, 4))
        healed = controller.on_heal(state, _outcome(HealStatus.FIXED, 4, False))
        assert healed.attempt_number == 5
        assert healed.first_attempt == 4


class TestReports:

    def test_escalation_report_lists_every_attempt(self):
        history = [
            HealingAttempt(1, HealStrategy.MOCK_ADJUSTMENT, HealStatus.PARTIAL, root_cause="db not mocked"),
            HealingAttempt(2, HealStrategy.LOGIC_FIX, HealStatus.FAILED, explanation="operator flip"),
            HealingAttempt(3, HealStrategy.TEST_FIX, HealStatus.FIXED, confidence_score=90),
        ]
        report = build_escalation_report("src/a.ts", _execution(ExecutionStatus.FAIL, 4), history, 4)
        assert "src/a.ts still failing after 3 attempt(s)" in report
        assert "Final test status: FAIL" in report
        assert "Failed tests: 1/5" in report
        for n in (1, 2, 3):
            assert f"### Attempt {n}:" in report
        assert "db not mocked" in report
        assert "operator flip" in report
        assert "## Suggested review" in report

    def test_escalation_report_counts_attempts_of_this_run(self):
        report = build_escalation_report("src/a.ts", None, [], 9, first_attempt=6)
        assert "still failing after 3 attempt(s)" in report

    def test_escalation_report_without_history(self):
        report = build_escalation_report("a.py", None, [], 1)
        assert "No healing attempts were recorded." in report

    def test_commit_message(self):
        message = build_commit_message("src/a.ts", 2, HealStrategy.ASYNC_FIX, 88)
        assert message.splitlines()[0] == "fix(selfheal): auto-heal src/a.ts [attempt 2]"
        assert "Strategy: ASYNC_FIX" in message
        assert "Confidence: 88" in message
