"""Sandbox executor — runs a generated suite against its source in isolation.

Lifecycle (one sandbox per invocation):
  1. MATERIALIZE  temp workspace with the source, the test and a
                  self-contained runner manifest
  2. PROVISION    install the minimal runner dependencies (bounded)
  3. EXECUTE      run the test command under a hard timeout
  4. CLASSIFY     parse results and decide PASS / FAIL / ERROR / TIMEOUT
  5. CLEANUP      delete the workspace (always, even on failure,
                  timeout or cancellation)

Setup, provisioning and result-reading failures are reported as ERROR
results, never raised.  Unexpected exceptions still propagate, after cleanup.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
import time
from enum import Enum
from pathlib import Path, PurePosixPath

from sandbox.output_parser import ParsedResults, build_failure_summary, parse_results
from sandbox.runners import LocalProcessRunner, ProcessResult, ProcessRunner, RunnerSession
from shared.code_extractor import truncate
from shared.errors import SandboxSetupError
from shared.languages import LanguageProfile, normalize_path, profile_for_path
from shared.schemas import ExecutionResult, ExecutionStatus, SourceUnit

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 25.0
DEFAULT_INSTALL_TIMEOUT_S = 120.0
DEFAULT_OUTPUT_LIMIT = 10_000

TIMEOUT_SUMMARY = (
    "Test execution exceeded the {timeout:g}s time limit and was killed. "
    "Likely causes: an infinite loop, a promise / awaitable that never "
    "resolves, or an unmocked external call (network, database, timer) "
    "blocking the test."
)


class SandboxStage(str, Enum):
    MATERIALIZE = "MATERIALIZE"
    PROVISION = "PROVISION"
    EXECUTE = "EXECUTE"
    CLASSIFY = "CLASSIFY"
    CLEANUP = "CLEANUP"


class SandboxExecutor:
    """Materialises, runs and destroys one sandbox per call.

    Usage::

        executor = SandboxExecutor(runner=LocalProcessRunner())
        result = await executor.run(source, "tests/test_mod.py", test_code, 1)
        print(result.status, result.failure_summary)
    """

    def __init__(
        self,
        runner: ProcessRunner | None = None,
        workspace_root: str | None = None,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        install_timeout_s: float = DEFAULT_INSTALL_TIMEOUT_S,
        output_limit: int = DEFAULT_OUTPUT_LIMIT,
        install_deps: bool = True,
    ):
        self.runner = runner or LocalProcessRunner()
        self.workspace_root = workspace_root or tempfile.gettempdir()
        self.timeout_s = timeout_s
        self.install_timeout_s = install_timeout_s
        self.output_limit = output_limit
        self.install_deps = install_deps

    # -- Public API ----------------------------------------------------

    async def run(
        self,
        source: SourceUnit,
        test_file_path: str,
        test_code: str,
        attempt_number: int,
    ) -> ExecutionResult:
        """Run *test_code* against *source* and classify the outcome.

        The workspace is **always** removed before this returns or raises.
        """
        started = time.monotonic()
        stage = SandboxStage.MATERIALIZE
        workspace: str | None = None
        sandbox_id = ""

        def error(message: str, output: ProcessResult | None = None) -> ExecutionResult:
            return self._error_result(
                source, test_file_path, attempt_number, started, stage, sandbox_id, message, output,
            )

        profile = profile_for_path(source.file_path)
        if profile is None:
            return error(f"No language profile for {source.file_path}")

        try:
            try:
                workspace = self._create_workspace()
                sandbox_id = os.path.basename(workspace)
                self._materialize(workspace, profile, source, test_file_path, test_code)
            except SandboxSetupError as exc:
                logger.error("Sandbox setup failed for %s: %s", source.file_path, exc)
                return error(str(exc))

            logger.info(
                "[%s] Running %s for %s (attempt %d, runner=%s)",
                sandbox_id, test_file_path, source.file_path, attempt_number, self.runner.name,
            )
            try:
                async with self.runner.session(workspace, profile, network=self.install_deps) as session:
                    if self.install_deps:
                        stage = SandboxStage.PROVISION
                        install = await self._provision(session, profile)
                        if install.timed_out or install.exit_code != 0:
                            reason = (
                                f"timed out after {self.install_timeout_s:g}s"
                                if install.timed_out
                                else f"exited with code {install.exit_code}"
                            )
                            logger.error("[%s] Dependency install %s", sandbox_id, reason)
                            return error(f"Dependency installation {reason}", install)
                        await session.isolate()

                    stage = SandboxStage.EXECUTE
                    output = await self._execute(session, profile, test_file_path)
            except SandboxSetupError as exc:
                logger.error("[%s] Runner failure during %s: %s", sandbox_id, stage.value, exc)
                return error(str(exc))

            stage = SandboxStage.CLASSIFY
            try:
                structured = self._read_structured(workspace, profile)
                return self._classify(
                    source, test_file_path, attempt_number, started, sandbox_id,
                    profile, output, structured,
                )
            except OSError as exc:
                logger.error("[%s] Could not read test results: %s", sandbox_id, exc)
                return error(f"Could not read test results: {exc}", output)
        finally:
            self._cleanup(workspace)

    # -- Stages --------------------------------------------------------

    def _create_workspace(self) -> str:
        try:
            os.makedirs(self.workspace_root, exist_ok=True)
            return tempfile.mkdtemp(prefix="selfheal-", dir=self.workspace_root)
        except OSError as exc:
            raise SandboxSetupError(f"Could not create sandbox workspace: {exc}") from exc

    def _materialize(
        self,
        workspace: str,
        profile: LanguageProfile,
        source: SourceUnit,
        test_file_path: str,
        test_code: str,
    ) -> None:
        files = {
            source.file_path: source.content,
            test_file_path: test_code,
            **profile.manifest_files(source.file_path, test_file_path),
        }
        try:
            for rel_path, text in files.items():
                target = _safe_join(workspace, rel_path)
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_text(text, encoding="utf-8")
        except OSError as exc:
            raise SandboxSetupError(f"Could not write sandbox files: {exc}") from exc

    async def _provision(self, session: RunnerSession, profile: LanguageProfile) -> ProcessResult:
        return await session.run(
            profile.install_command(), self.install_timeout_s, profile.environment(),
            output_limit=self.output_limit,
        )

    async def _execute(
        self,
        session: RunnerSession,
        profile: LanguageProfile,
        test_file_path: str,
    ) -> ProcessResult:
        return await session.run(
            profile.test_command(normalize_path(test_file_path)),
            self.timeout_s,
            profile.environment(),
            output_limit=self.output_limit,
        )

    @staticmethod
    def _read_structured(workspace: str, profile: LanguageProfile) -> str:
        """Contents of the structured results file, "" when the run wrote none."""
        path = Path(workspace) / profile.results_file
        try:
            return path.read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError:
            return ""

    def _classify(
        self,
        source: SourceUnit,
        test_file_path: str,
        attempt_number: int,
        started: float,
        sandbox_id: str,
        profile: LanguageProfile,
        output: ProcessResult,
        structured: str,
    ) -> ExecutionResult:
        combined = f"{output.stdout}\n{output.stderr}"
        parsed = parse_results(structured, combined, profile)

        if output.timed_out:
            status = ExecutionStatus.TIMEOUT
            summary = TIMEOUT_SUMMARY.format(timeout=self.timeout_s)
            details = build_failure_summary(parsed.suites, parsed.messages)
            if details:
                summary = f"{summary}\n\n{details}"
        else:
            status = classify_status(output.exit_code, parsed, combined, profile)
            summary = build_failure_summary(parsed.suites, parsed.messages)
            if not summary and status is not ExecutionStatus.PASS:
                summary = _tail(output.stderr or output.stdout)

        logger.info(
            "[%s] %s: %s | %d passed, %d failed, %d skipped of %d (parser=%s)",
            sandbox_id, test_file_path, status.value,
            parsed.passed, parsed.failed + parsed.errors, parsed.skipped, parsed.total,
            parsed.parser,
        )
        return ExecutionResult(
            status=status,
            file_path=source.file_path,
            test_file_path=test_file_path,
            attempt_number=attempt_number,
            total_tests=parsed.total,
            passed_tests=parsed.passed,
            failed_tests=parsed.failed + parsed.errors,
            skipped_tests=parsed.skipped,
            duration_ms=int((time.monotonic() - started) * 1000),
            suites=parsed.suites,
            raw_output=truncate(output.stdout, self.output_limit),
            raw_error=truncate(output.stderr, self.output_limit),
            failure_summary=summary,
            exit_code=output.exit_code,
            parser=parsed.parser,
            stage=SandboxStage.CLASSIFY.value,
            sandbox_id=sandbox_id,
        )

    # -- Cleanup -------------------------------------------------------

    @staticmethod
    def _cleanup(workspace: str | None) -> None:
        """Delete the workspace.  Never raises."""
        if workspace is None:
            return
        try:
            shutil.rmtree(workspace)
            logger.debug("Sandbox %s removed", os.path.basename(workspace))
        except FileNotFoundError:
            pass  # already gone
        except OSError as exc:
            logger.warning("Failed to remove sandbox %s: %s", workspace, exc)

    # -- Error helper --------------------------------------------------

    def _error_result(
        self,
        source: SourceUnit,
        test_file_path: str,
        attempt_number: int,
        started: float,
        stage: SandboxStage,
        sandbox_id: str,
        message: str,
        output: ProcessResult | None = None,
    ) -> ExecutionResult:
        stdout = output.stdout if output else ""
        stderr = output.stderr if output else ""
        return ExecutionResult(
            status=ExecutionStatus.ERROR,
            file_path=source.file_path,
            test_file_path=test_file_path,
            attempt_number=attempt_number,
            duration_ms=int((time.monotonic() - started) * 1000),
            raw_output=truncate(stdout, self.output_limit),
            raw_error=truncate(f"{message}\n{stderr}".strip(), self.output_limit),
            failure_summary=f"Sandbox {stage.value.lower()} failed: {message}",
            exit_code=output.exit_code if output else None,
            stage=stage.value,
            sandbox_id=sandbox_id,
        )


def classify_status(
    exit_code: int | None,
    parsed: ParsedResults,
    output: str,
    profile: LanguageProfile,
) -> ExecutionStatus:
    """Decide the status of a run that finished within its time limit."""
    if exit_code == 0 and parsed.failed == 0 and parsed.errors == 0 and parsed.total > 0:
        return ExecutionStatus.PASS
    if exit_code in profile.error_exit_codes:
        return ExecutionStatus.ERROR
    # Nothing ran: compile, import or collection failure, or no runner at all
    if parsed.total == 0:
        return ExecutionStatus.ERROR
    if parsed.failed == 0 and (parsed.errors > 0 or any(m in output for m in profile.error_markers)):
        return ExecutionStatus.ERROR
    return ExecutionStatus.FAIL


def _safe_join(workspace: str, rel_path: str) -> Path:
    """Resolve *rel_path* inside *workspace*, rejecting absolute or escaping paths."""
    normalized = normalize_path(rel_path)
    pure = PurePosixPath(normalized)
    if not normalized or pure.is_absolute() or ".." in pure.parts or ":" in pure.parts[0]:
        raise SandboxSetupError(f"Refusing to write outside the sandbox: {rel_path!r}")
    return Path(workspace).joinpath(*pure.parts)


def _tail(text: str, lines: int = 30) -> str:
    return "\n".join((text or "").strip().splitlines()[-lines:])
