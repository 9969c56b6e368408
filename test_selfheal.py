"""Tests for the selfheal command line: wiring, exit codes and the JSON report.

Run:
    python -m pytest test_selfheal.py -v
"""

from __future__ import annotations

import json
import sys
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

_ROOT = Path(__file__).resolve().parent
if str(_ROOT) not in sys.path:
    sys.path.insert(0, str(_ROOT))

import selfheal
from agents.heal_loop import HealLoopReport, LoopStatus
from services.attempt_store import InMemoryAttemptStore, JsonlAttemptStore
from services.config import load_settings
from services.github_service import GitHubRepository, LocalRepository


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)   # no stray .env
    for name in ("GITHUB_REPO", "GITHUB_TOKEN", "ATTEMPT_STORE_PATH", "MAX_HEAL_ATTEMPTS", "LOG_FILE", "SANDBOX_BACKEND"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("MODEL_API_KEY", "test-key")


def _args(*argv: str):
    return selfheal.build_parser().parse_args(["run", "src/math.ts", *argv])


class TestWiring:

    def test_local_repository(self, tmp_path):
        caps = selfheal.build_capabilities(load_settings(), _args("--repo", str(tmp_path), "--commit"))
        assert isinstance(caps.source, LocalRepository)
        assert caps.source.commit
        assert caps.publisher is caps.source
        assert isinstance(caps.history, InMemoryAttemptStore)

    def test_github_repository_and_jsonl_history(self, tmp_path):
        settings = load_settings(GITHUB_TOKEN="t", ATTEMPT_STORE_PATH=str(tmp_path / "h.jsonl"))
        caps = selfheal.build_capabilities(settings, _args("--github", "org/repo", "--no-publish"))
        assert isinstance(caps.source, GitHubRepository)
        assert caps.source.repo_name == "org/repo"
        assert caps.publisher is None
        assert isinstance(caps.history, JsonlAttemptStore)

    def test_missing_target_is_a_configuration_error(self, capsys):
        assert selfheal.main(["run", "src/math.ts"]) == selfheal.EXIT_FAILED
        assert "Configuration error" in capsys.readouterr().err

    def test_invalid_budget_is_rejected(self, tmp_path, capsys):
        code = selfheal.main(["run", "src/math.ts", "--repo", str(tmp_path), "--max-attempts", "0"])
        assert code == selfheal.EXIT_FAILED
        assert "MAX_HEAL_ATTEMPTS" in capsys.readouterr().err

    def test_repo_and_github_are_exclusive(self):
        with pytest.raises(SystemExit):
            selfheal.build_parser().parse_args(["run", "a.ts", "--repo", ".", "--github", "o/n"])

    def test_overrides_reach_the_pipeline(self, tmp_path):
        args = _args("--repo", str(tmp_path), "--max-attempts", "5")
        settings = load_settings(**selfheal._settings_overrides(args))
        pipeline = selfheal.build_pipeline(settings, selfheal.build_capabilities(settings, args))
        assert pipeline.max_attempts == 5
        assert pipeline.executor.timeout_s == settings.SANDBOX_TIMEOUT


class TestExitCodes:

    @pytest.mark.parametrize("status,code", [
        (LoopStatus.PASSED, 0),
        (LoopStatus.ESCALATED, 1),
        (LoopStatus.FAILED, 1),
        (LoopStatus.SKIPPED, 2),
    ])
    def test_status_maps_to_exit_code(self, tmp_path, status, code):
        report = HealLoopReport(file_path="src/math.ts", status=status, attempts_used=1, max_attempts=3)
        with patch.object(selfheal, "run_heal_loop", AsyncMock(return_value=report)) as loop:
            assert selfheal.main(["run", "src/math.ts", "--repo", str(tmp_path), "--quiet"]) == code
        assert loop.await_args.args[1] == "src/math.ts"

    def test_report_is_written(self, tmp_path):
        report = HealLoopReport(
            file_path="src/math.ts",
            status=LoopStatus.ESCALATED,
            attempts_used=4,
            max_attempts=3,
            escalation_report="Self-healing escalation: src/math.ts still failing after 3 attempt(s)",
        )
        out = tmp_path / "out" / "report.json"
        with patch.object(selfheal, "run_heal_loop", AsyncMock(return_value=report)):
            selfheal.main(["run", "src/math.ts", "--repo", str(tmp_path), "--report", str(out), "--quiet"])
        data = json.loads(out.read_text())
        assert data["status"] == "ESCALATED"
        assert data["attempts_used"] == 4
        assert "still failing" in data["escalation_report"]
