"""Output parser — turns runner artefacts into suite / case results.

Primary source is the runner's structured file (Jest ``--json`` or
pytest ``--junitxml``).  When it is missing or malformed the raw
console text is scanned with regexes instead.  Both paths converge on
:class:`ParsedResults`.
"""

from __future__ import annotations

import json
import logging
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Any

from shared.languages import LanguageProfile
from shared.schemas import CaseResult, CaseStatus, SuiteResult

logger = logging.getLogger(__name__)

HEURISTIC_SUITE_NAME = "Parsed from output"
MAX_MESSAGE_CHARS = 500
MAX_STACK_LINES = 10


@dataclass
class ParsedResults:
    suites: list[SuiteResult] = field(default_factory=list)
    total: int = 0
    passed: int = 0
    failed: int = 0
    skipped: int = 0
    errors: int = 0                     # suites/cases that could not run at all
    messages: list[str] = field(default_factory=list)   # suite-level error text
    parser: str = "none"                # "structured" | "heuristic" | "none"


def parse_results(
    structured_text: str,
    raw_output: str,
    profile: LanguageProfile,
) -> ParsedResults:
    """Parse structured output, falling back to the raw console text."""
    if structured_text and structured_text.strip():
        try:
            if profile.results_format == "jest-json":
                return parse_jest_json(structured_text)
            if profile.results_format == "junit-xml":
                return parse_junit_xml(structured_text)
        except (ValueError, ET.ParseError, KeyError, TypeError, AttributeError) as exc:
            logger.warning(
                "Structured %s results unreadable (%s) — using console fallback",
                profile.results_format, exc,
            )
    return parse_console_output(raw_output or "", profile)


# ── Jest JSON ────────────────────────────────────────────────────────

_JEST_STATUS = {"passed": CaseStatus.PASSED, "failed": CaseStatus.FAILED}


def parse_jest_json(text: str) -> ParsedResults:
    data = json.loads(text)
    if not isinstance(data, dict) or "testResults" not in data:
        raise ValueError("not a Jest --json report")

    result = ParsedResults(parser="structured")
    for suite_data in data.get("testResults") or []:
        assertions = suite_data.get("assertionResults")
        if assertions is None:
            assertions = suite_data.get("testResults") or []

        cases: list[CaseResult] = []
        for item in assertions:
            failures = item.get("failureMessages") or []
            message, stack = _split_failure(failures[0] if failures else "")
            cases.append(CaseResult(
                name=item.get("fullName") or item.get("title") or "(unnamed)",
                status=_JEST_STATUS.get(item.get("status"), CaseStatus.SKIPPED),
                duration_ms=float(item.get("duration") or 0),
                error_message=message,
                error_stack=stack,
            ))

        suite = SuiteResult(
            suite_name=suite_data.get("name") or suite_data.get("testFilePath") or "(suite)",
            passed=_count(suite_data, "numPassingTests", cases, CaseStatus.PASSED),
            failed=_count(suite_data, "numFailingTests", cases, CaseStatus.FAILED),
            skipped=_count(suite_data, "numPendingTests", cases, CaseStatus.SKIPPED),
            duration_ms=_suite_duration(suite_data),
            cases=cases,
        )
        result.suites.append(suite)

        exec_error = suite_data.get("testExecError") or {}
        suite_message = suite_data.get("failureMessage") or suite_data.get("message") or ""
        if not cases and (exec_error or suite_message):
            result.errors += 1
            result.messages.append(
                (exec_error.get("message") if isinstance(exec_error, dict) else "") or suite_message
            )

    result.passed = int(data.get("numPassedTests", sum(s.passed for s in result.suites)))
    result.failed = int(data.get("numFailedTests", sum(s.failed for s in result.suites)))
    result.skipped = int(data.get("numPendingTests", sum(s.skipped for s in result.suites))) + int(
        data.get("numTodoTests", 0)
    )
    result.total = int(data.get("numTotalTests", result.passed + result.failed + result.skipped))
    result.errors = max(result.errors, int(data.get("numRuntimeErrorTestSuites", 0)))
    return result


def _count(suite_data: dict[str, Any], key: str, cases: list[CaseResult], status: CaseStatus) -> int:
    if key in suite_data:
        return int(suite_data[key])
    return sum(1 for c in cases if c.status is status)


def _suite_duration(suite_data: dict[str, Any]) -> float:
    stats = suite_data.get("perfStats") or {}
    start = suite_data.get("startTime", stats.get("start"))
    end = suite_data.get("endTime", stats.get("end"))
    if isinstance(start, (int, float)) and isinstance(end, (int, float)):
        return float(max(0, end - start))
    return 0.0


# ── JUnit XML (pytest) ───────────────────────────────────────────────

def parse_junit_xml(text: str) -> ParsedResults:
    root = ET.fromstring(text)
    suite_elems = [root] if root.tag == "testsuite" else list(root.iter("testsuite"))
    if not suite_elems:
        raise ValueError("no <testsuite> element")

    result = ParsedResults(parser="structured")
    for elem in suite_elems:
        suite = SuiteResult(
            suite_name=elem.get("name") or "pytest",
            duration_ms=_seconds_to_ms(elem.get("time")),
        )
        for case in elem.iter("testcase"):
            classname = case.get("classname") or ""
            name = case.get("name") or "(unnamed)"
            full_name = f"{classname}::{name}" if classname else name

            failure = case.find("failure")
            error = case.find("error")
            skipped = case.find("skipped")
            if failure is not None or error is not None:
                node = failure if failure is not None else error
                status = CaseStatus.FAILED
                message = (node.get("message") or "").strip()
                stack = _trim_stack(node.text or "")
                if failure is not None:
                    suite.failed += 1
                else:
                    result.errors += 1
            elif skipped is not None:
                status = CaseStatus.SKIPPED
                message = (skipped.get("message") or "").strip()
                stack = ""
                suite.skipped += 1
            else:
                status = CaseStatus.PASSED
                message = stack = ""
                suite.passed += 1

            suite.cases.append(CaseResult(
                name=full_name,
                status=status,
                duration_ms=_seconds_to_ms(case.get("time")),
                error_message=message[:MAX_MESSAGE_CHARS],
                error_stack=stack,
            ))
        result.suites.append(suite)

    result.passed = sum(s.passed for s in result.suites)
    result.failed = sum(s.failed for s in result.suites)
    result.skipped = sum(s.skipped for s in result.suites)
    result.total = result.passed + result.failed + result.skipped + result.errors
    return result


def _seconds_to_ms(value: str | None) -> float:
    try:
        return round(float(value) * 1000, 3) if value else 0.0
    except ValueError:
        return 0.0


# ── Console fallback ─────────────────────────────────────────────────

_JEST_TESTS_LINE = re.compile(r"^\s*Tests:\s+(.*)$", re.MULTILINE)
_PYTEST_SUMMARY_LINE = re.compile(
    r"^=+ (.*\b(?:passed|failed|errors?|skipped|no tests ran)\b.*) =+\s*$",
    re.MULTILINE,
)
_COUNT = re.compile(r"(\d+)\s+(passed|failed|errors?|skipped|pending|todo|total)")

_JEST_PASS_MARK = re.compile(r"^\s*[✓✔√]\s+(.+?)(?:\s+\(\d+\s*m?s\))?\s*$", re.MULTILINE)
_JEST_FAIL_MARK = re.compile(r"^\s*[✕✗×]\s+(.+?)(?:\s+\(\d+\s*m?s\))?\s*$", re.MULTILINE)
_PYTEST_PASS_MARK = re.compile(r"^PASSED\s+(\S+)", re.MULTILINE)
_PYTEST_FAIL_MARK = re.compile(r"^FAILED\s+(\S+)(?:\s+-\s+(.*))?$", re.MULTILINE)
_PYTEST_ERROR_MARK = re.compile(r"^ERROR\s+(\S+)(?:\s+-\s+(.*))?$", re.MULTILINE)


def parse_console_output(text: str, profile: LanguageProfile) -> ParsedResults:
    """Regex scan of console output, producing one synthetic suite."""
    result = ParsedResults()
    if not text.strip():
        return result

    if profile.results_format == "jest-json":
        lines = _JEST_TESTS_LINE.findall(text)
        cases = (
            [CaseResult(name=n, status=CaseStatus.PASSED) for n in _JEST_PASS_MARK.findall(text)]
            + [CaseResult(name=n, status=CaseStatus.FAILED) for n in _JEST_FAIL_MARK.findall(text)]
        )
    else:
        lines = _PYTEST_SUMMARY_LINE.findall(text)
        cases = [CaseResult(name=n, status=CaseStatus.PASSED) for n in _PYTEST_PASS_MARK.findall(text)]
        cases += [
            CaseResult(name=n, status=CaseStatus.FAILED, error_message=(m or "").strip())
            for n, m in _PYTEST_FAIL_MARK.findall(text)
        ]
        cases += [
            CaseResult(name=n, status=CaseStatus.FAILED, error_message=(m or "").strip())
            for n, m in _PYTEST_ERROR_MARK.findall(text)
        ]

    counts: dict[str, int] = {}
    if lines:
        for amount, label in _COUNT.findall(lines[-1]):
            key = "errors" if label.startswith("error") else label
            counts[key] = counts.get(key, 0) + int(amount)

    if not counts and not cases:
        return result

    result.parser = "heuristic"
    result.passed = counts.get("passed", sum(1 for c in cases if c.status is CaseStatus.PASSED))
    result.failed = counts.get("failed", sum(1 for c in cases if c.status is CaseStatus.FAILED))
    result.skipped = counts.get("skipped", 0) + counts.get("pending", 0) + counts.get("todo", 0)
    result.errors = counts.get("errors", 0)
    result.total = counts.get(
        "total", result.passed + result.failed + result.skipped + result.errors,
    )
    result.suites.append(SuiteResult(
        suite_name=HEURISTIC_SUITE_NAME,
        passed=result.passed,
        failed=result.failed,
        skipped=result.skipped,
        cases=cases,
    ))
    return result


# ── Failure summary ──────────────────────────────────────────────────

def build_failure_summary(suites: list[SuiteResult], messages: list[str] | None = None) -> str:
    """Readable digest of every failing case for the healing prompt."""
    blocks: list[str] = []
    index = 0
    for suite in suites:
        for case in suite.cases:
            if case.status is not CaseStatus.FAILED:
                continue
            index += 1
            block = f'[Failure {index}] Test: "{case.name}"\nError: {case.error_message or "(no message)"}'
            if case.error_stack:
                block += f"\nStack:\n{case.error_stack}"
            blocks.append(block)
    for message in messages or []:
        if message and message.strip():
            index += 1
            blocks.append(f"[Failure {index}] Suite error:\n{_trim_stack(message)}")
    return "\n\n---\n\n".join(blocks)


def _split_failure(raw: str) -> tuple[str, str]:
    if not raw:
        return "", ""
    lines = _strip_ansi(raw).strip().splitlines()
    message = lines[0][:MAX_MESSAGE_CHARS] if lines else ""
    return message, _trim_stack("\n".join(lines[1:]))


def _trim_stack(text: str) -> str:
    lines = [ln for ln in _strip_ansi(text).splitlines() if ln.strip()]
    return "\n".join(lines[:MAX_STACK_LINES])


_ANSI = re.compile(r"\x1b\[[0-9;]*m")


def _strip_ansi(text: str) -> str:
    return _ANSI.sub("", text)
