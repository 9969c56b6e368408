"""Healing analyzer — diagnoses a failing run and proposes a full replacement.

One model call per attempt.  The response is an ``<analysis>`` XML block
that names a root cause, a strategy, a confidence score, a risk level and
the complete corrected file (source, or the test for ``TEST_FIX``).

Parsing is a pure fallback chain, each step independently testable:

    strict XML (ElementTree)  →  lenient tag regex  →  labelled-line heuristic

Whatever the model says, the status is decided here by
:func:`decide_status`, never by the model.
"""

from __future__ import annotations

import logging
import math
import re
import time
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Any

from agents.base import ModelInvoker
from shared.code_extractor import extract_fenced_block, extract_xml_tag, strip_code_fences, truncate
from shared.determinism import HEALING_ROLE, HEALING_TEMPERATURE, MAX_TOKENS
from shared.languages import LanguageProfile, profile_for_path
from shared.schemas import (
    ExecutionResult,
    ExecutionStatus,
    HealingAttempt,
    HealStatus,
    HealStrategy,
    ReplacementTarget,
    Risk,
    SourceUnit,
)

logger = logging.getLogger(__name__)

MAX_SOURCE_CHARS = 8_000
MAX_OUTPUT_CHARS = 5_000
CONFIDENCE_THRESHOLD = 70
MIN_REPLACEMENT_CHARS = 50
DEFAULT_CONFIDENCE = 50

ROOT_TAG = "analysis"
_FIELDS = (
    "root_cause",
    "strategy",
    "confidence_score",
    "explanation",
    "fixed_source_code",
    "fixed_test_code",
    "risk",
    "affected_functions",
)

_LABELS = {
    "root_cause": re.compile(r"^\W*root[ _]cause\W*[:\-]\s*(.+)$", re.IGNORECASE | re.MULTILINE),
    "strategy": re.compile(r"^\W*strategy\W*[:\-]\s*([A-Za-z_]+)", re.IGNORECASE | re.MULTILINE),
    "confidence_score": re.compile(
        r"^\W*confidence(?:[ _]score)?\W*[:\-]\s*(\d{1,3})", re.IGNORECASE | re.MULTILINE,
    ),
    "risk": re.compile(
        r"^\W*(?:breaking[ _]change[ _])?risk\W*[:\-]\s*([A-Za-z]+)", re.IGNORECASE | re.MULTILINE,
    ),
    "explanation": re.compile(r"^\W*explanation\W*[:\-]\s*(.+)$", re.IGNORECASE | re.MULTILINE),
    "affected_functions": re.compile(
        r"^\W*affected[ _]functions\W*[:\-]\s*(.+)$", re.IGNORECASE | re.MULTILINE,
    ),
}


# ── Types ────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class HealRequest:
    """Everything one heal invocation needs about the failing attempt."""

    source: SourceUnit
    test_file_path: str
    test_code: str
    execution: ExecutionResult
    attempt_number: int
    first_attempt: int = 1          # attempt this run started at


@dataclass
class AnalysisResult:
    """Normalised model diagnosis.  Always well-formed, possibly UNKNOWN."""

    strategy: HealStrategy = HealStrategy.UNKNOWN
    root_cause: str = ""
    explanation: str = ""
    confidence_score: int = DEFAULT_CONFIDENCE
    risk: Risk = Risk.MEDIUM
    fixed_source_code: str = ""
    fixed_test_code: str = ""
    affected_functions: tuple[str, ...] = ()
    parser: str = "none"          # "xml" | "lenient" | "heuristic" | "none"
    latency_ms: int = 0

    @property
    def replacement_target(self) -> ReplacementTarget:
        if self.strategy is HealStrategy.TEST_FIX:
            return ReplacementTarget.TEST
        return ReplacementTarget.SOURCE

    @property
    def replacement_code(self) -> str:
        if self.replacement_target is ReplacementTarget.TEST:
            return self.fixed_test_code
        return self.fixed_source_code

    def to_dict(self) -> dict[str, Any]:
        return {
            "strategy": self.strategy.value,
            "root_cause": self.root_cause,
            "explanation": self.explanation,
            "confidence_score": self.confidence_score,
            "risk": self.risk.value,
            "replacement_target": self.replacement_target.value,
            "affected_functions": list(self.affected_functions),
            "parser": self.parser,
            "latency_ms": self.latency_ms,
        }


# ── Decision policy ──────────────────────────────────────────────────

def decide_status(analysis: AnalysisResult, original_source: str, original_test: str) -> HealStatus:
    """FIXED / PARTIAL / FAILED from the analysis and what it would replace.

    FAILED when the payload is missing, too short, unchanged, or the
    strategy is UNKNOWN, whatever confidence the model reported.
    """
    code = analysis.replacement_code.strip()
    original = (
        original_test
        if analysis.replacement_target is ReplacementTarget.TEST
        else original_source
    )
    if (
        analysis.strategy is HealStrategy.UNKNOWN
        or len(code) < MIN_REPLACEMENT_CHARS
        or code == original.strip()
    ):
        return HealStatus.FAILED
    if analysis.confidence_score >= CONFIDENCE_THRESHOLD and analysis.risk is not Risk.HIGH:
        return HealStatus.FIXED
    return HealStatus.PARTIAL


# ── Prompts ──────────────────────────────────────────────────────────

def build_system_prompt(profile: LanguageProfile) -> str:
    strategies = " | ".join(s.value for s in HealStrategy)
    return f"""\
You are an autonomous QA engineer.  You analyse failing {profile.framework}
unit tests and produce a precise fix so that the tests pass.

## Principles
1. Fix the ROOT CAUSE.  Never patch over symptoms or weaken assertions
   until they pass trivially.
2. Preserve all existing working behaviour.
3. Keep the original code style, naming and structure.
4. If the test itself is wrong (bad assertion, bad mock, unreasonable
   expectation), fix the TEST and use strategy TEST_FIX.
5. Be honest about confidence.  An uncertain fix with a clear
   explanation beats a confidently wrong one.

## Output format
Respond ONLY with this XML block.  No text before or after it.
Wrap code in CDATA sections.

<{ROOT_TAG}>
  <root_cause>Why the test fails.  Name functions and variables.</root_cause>
  <strategy>{strategies}</strategy>
  <confidence_score>0-100</confidence_score>
  <explanation>What was wrong, why, and what you changed.</explanation>
  <fixed_source_code><![CDATA[
The COMPLETE corrected source file (not a diff).  Empty for TEST_FIX.
  ]]></fixed_source_code>
  <fixed_test_code><![CDATA[
The COMPLETE corrected test file.  Only for TEST_FIX, otherwise empty.
  ]]></fixed_test_code>
  <risk>LOW | MEDIUM | HIGH</risk>
  <affected_functions>comma,separated,names</affected_functions>
</{ROOT_TAG}>"""


def _timeout_note(execution: ExecutionResult) -> str:
    if execution.status is not ExecutionStatus.TIMEOUT:
        return ""
    return """
## TIMEOUT (not an assertion failure)
The test process was killed for exceeding the wall-clock limit.  No
assertion necessarily failed.  Look for infinite loops, promises or
awaitables that never settle, unmocked network or database calls, timers
that are never cleared, and handles left open after the tests finish.
"""


def _history_section(history: list[HealingAttempt]) -> str:
    # escalation records carry no fix
    tried = [a for a in history if a.status is not HealStatus.ESCALATED]
    if not tried:
        return ""
    entries = "\n\n".join(
        f"### Attempt {a.attempt_number}:\n{a.history_entry()}" for a in tried
    )
    return (
        "## Previous Healing Attempts (Tests Still Failed)\n"
        "These fixes were already tried and did NOT work.  Do NOT repeat them.\n"
        f"{entries}\n"
    )


def build_user_prompt(
    request: HealRequest,
    history: list[HealingAttempt],
    profile: LanguageProfile,
) -> str:
    source = request.source
    execution = request.execution
    fence = profile.fence_language(source.file_path)
    return f"""\
## Task
Analyse this failing test run and produce a fix.  This is attempt #{request.attempt_number}.

## Source file under test
Path: `{source.file_path}`
```{fence}
{truncate(source.content, MAX_SOURCE_CHARS)}
```

## Generated test file
Path: `{request.test_file_path}`
```{fence}
{request.test_code}
```

## Test execution result
Status: {execution.status.value}
Total: {execution.total_tests} | Passed: {execution.passed_tests} | Failed: {execution.failed_tests}
Duration: {execution.duration_ms}ms
{_timeout_note(execution)}
## Structured failure summary
{execution.failure_summary or "No structured failure data available."}

## Raw test output
```
{truncate(execution.raw_output, MAX_OUTPUT_CHARS)}
```

## Raw stderr / compiler errors
```
{truncate(execution.raw_error, MAX_OUTPUT_CHARS) or "None"}
```

{_history_section(history)}
Now respond ONLY with the <{ROOT_TAG}> XML block."""


# ── Response parsing ─────────────────────────────────────────────────

def _coerce_strategy(value: str) -> HealStrategy:
    key = (value or "").strip().upper().replace(" ", "_")
    return HealStrategy(key) if key in HealStrategy.__members__ else HealStrategy.UNKNOWN


def _coerce_confidence(value: str) -> int:
    match = re.search(r"-?\d+(?:\.\d+)?", value or "")
    if not match:
        return DEFAULT_CONFIDENCE
    number = float(match.group(0))
    if math.isnan(number):
        return DEFAULT_CONFIDENCE
    return int(max(0, min(100, round(number))))


def _coerce_risk(value: str) -> Risk:
    key = (value or "").strip().upper()
    return Risk(key) if key in Risk.__members__ else Risk.MEDIUM


def _split_names(value: str) -> tuple[str, ...]:
    return tuple(name.strip() for name in (value or "").split(",") if name.strip())


def _build(fields: dict[str, str], parser: str) -> AnalysisResult:
    return AnalysisResult(
        strategy=_coerce_strategy(fields.get("strategy", "")),
        root_cause=fields.get("root_cause", "").strip(),
        explanation=fields.get("explanation", "").strip(),
        confidence_score=_coerce_confidence(fields.get("confidence_score", "")),
        risk=_coerce_risk(fields.get("risk", "")),
        fixed_source_code=strip_code_fences(fields.get("fixed_source_code", "")),
        fixed_test_code=strip_code_fences(fields.get("fixed_test_code", "")),
        affected_functions=_split_names(fields.get("affected_functions", "")),
        parser=parser,
    )


def _analysis_block(text: str) -> str | None:
    start = text.find(f"<{ROOT_TAG}")
    end = text.rfind(f"</{ROOT_TAG}>")
    if start < 0 or end < start:
        return None
    return text[start:end + len(ROOT_TAG) + 3]


def parse_strict(text: str) -> AnalysisResult | None:
    """Well-formed ``<analysis>`` document via ElementTree."""
    block = _analysis_block(text)
    if block is None:
        return None
    try:
        root = ET.fromstring(block)
    except ET.ParseError:
        return None
    fields = {}
    for name in _FIELDS:
        node = root.find(name)
        if node is not None:
            fields[name] = "".join(node.itertext())
    # Older prompt wording
    if "risk" not in fields and root.find("breaking_change_risk") is not None:
        fields["risk"] = root.findtext("breaking_change_risk", "")
    return _build(fields, "xml") if fields else None


def parse_lenient(text: str) -> AnalysisResult | None:
    """Tag-by-tag regex extraction for malformed XML (unescaped ``<``/``&`` in code)."""
    fields = {name: extract_xml_tag(text, name) for name in _FIELDS}
    if not fields["risk"]:
        fields["risk"] = extract_xml_tag(text, "breaking_change_risk")
    if not any(fields.values()):
        return None
    return _build(fields, "lenient")


def parse_heuristic(text: str) -> AnalysisResult | None:
    """Labelled lines (``Strategy: LOGIC_FIX``) plus the longest fenced code block."""
    fields = {}
    for name, pattern in _LABELS.items():
        match = pattern.search(text)
        if match:
            fields[name] = match.group(1).strip()
    if "strategy" not in fields:
        return None
    code = extract_fenced_block(text)
    if _coerce_strategy(fields["strategy"]) is HealStrategy.TEST_FIX:
        fields["fixed_test_code"] = code
    else:
        fields["fixed_source_code"] = code
    return _build(fields, "heuristic")


def parse_analysis(text: str) -> AnalysisResult:
    """Run the fallback chain; unparseable output becomes an UNKNOWN analysis."""
    for parser in (parse_strict, parse_lenient, parse_heuristic):
        result = parser(text or "")
        if result is not None:
            return result
    return AnalysisResult(
        root_cause="Response parsing failed",
        explanation="The model returned a response that could not be parsed.",
        confidence_score=0,
        risk=Risk.HIGH,
    )


# ── Analyzer ─────────────────────────────────────────────────────────

class HealingAnalyzer:
    """Builds the prompts, calls the healing model once and parses the reply.

    Raises ``ModelInvocationError`` untouched: the caller records the
    transport failure as a FAILED attempt.
    """

    def __init__(self, model: ModelInvoker):
        self.model = model

    async def analyze(self, request: HealRequest, history: list[HealingAttempt]) -> AnalysisResult:
        profile = profile_for_path(request.source.file_path)
        if profile is None:
            return AnalysisResult(
                root_cause="Unsupported language",
                explanation=f"No language profile for {request.source.file_path}",
                confidence_score=0,
            )

        system_prompt = build_system_prompt(profile)
        user_prompt = build_user_prompt(request, history, profile)

        started = time.monotonic()
        response = await self.model.invoke(
            HEALING_ROLE,
            system_prompt,
            user_prompt,
            MAX_TOKENS,
            HEALING_TEMPERATURE,
        )
        analysis = parse_analysis(response.text)
        analysis.latency_ms = response.latency_ms or int((time.monotonic() - started) * 1000)

        logger.info(
            "Healing analysis for %s (attempt %d) | strategy=%s confidence=%d risk=%s parser=%s",
            request.source.file_path, request.attempt_number,
            analysis.strategy.value, analysis.confidence_score,
            analysis.risk.value, analysis.parser,
        )
        if analysis.parser == "none":
            logger.warning("Unparseable healing response (%d chars)", len(response.text))
        return analysis
