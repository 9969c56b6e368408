"""Test generator — one model call turns a source file into a test suite.

The prompt asks for a complete, runnable test module that mocks every
external dependency and ends with a machine-readable metadata comment::

    // @selfheal-meta: {"qualityScore": 85, "coverage": "FULL", "skipped": []}

(``#`` instead of ``//`` for Python).  :func:`parse_generated_suite`
validates and normalises the output; it is a pure function so it can be
tested without a model.
"""

from __future__ import annotations

import logging
import re
import time
from typing import Any

from agents.base import ModelInvoker
from shared.code_extractor import extract_json, strip_code_fences
from shared.determinism import GENERATION_ROLE, GENERATION_TEMPERATURE, MAX_TOKENS
from shared.errors import GenerationValidationError, ModelInvocationError
from shared.languages import LanguageProfile, profile_for_path
from shared.schemas import (
    Coverage,
    FunctionSignature,
    GeneratedTestSuite,
    GenerationResult,
    GenerationStatus,
    SkippedFunction,
    SourceUnit,
)

logger = logging.getLogger(__name__)

MAX_SOURCE_CHARS = 10_000
MIN_TEST_CHARS = 100
DEFAULT_QUALITY = 70
# Share of detected names that must appear for PARTIAL coverage
PARTIAL_COVERAGE_RATIO = 0.6

META_TAG = "@selfheal-meta"
_META_LINE = re.compile(rf"^[ \t]*(?://|#)[ \t]*{META_TAG}:[ \t]*(.*?)[ \t]*$", re.MULTILINE)
_META_QUALITY = re.compile(r"quality_?score\W*(\d{1,3})", re.IGNORECASE)
_META_COVERAGE = re.compile(r"coverage\W*(FULL|PARTIAL|MINIMAL)", re.IGNORECASE)


# ── Prompts ──────────────────────────────────────────────────────────

def build_system_prompt(profile: LanguageProfile, file_path: str) -> str:
    comment = "#" if profile.name == "python" else "//"
    mocking = (
        "unittest.mock (patch, MagicMock, AsyncMock) or pytest's monkeypatch"
        if profile.name == "python"
        else "jest.mock / jest.fn / jest.spyOn"
    )
    return f"""\
You are an autonomous test engineer.  Your sole job is to write
comprehensive, production-grade {profile.framework} unit tests for the
{profile.fence_language(file_path)} source file you are given.

## Testing rules
1. Test behaviour, not implementation details.
2. Every exported function gets at least one happy-path test, one
   edge-case test (empty, null/None, zero, boundary values) and one
   error-path test (raised exceptions, rejected promises / awaitables).
3. Mock ALL external dependencies (network, databases, cloud SDKs,
   filesystem, clock, environment) with {mocking}.  Tests must never
   perform real I/O.
4. Use descriptive test names that explain the scenario.
5. Follow Arrange-Act-Assert in every test.
6. Await asynchronous functions; never rely on timers or callbacks.

## Output format
Respond ONLY with the complete, runnable test file.  No explanation,
no preamble, no markdown fences.

End the file with exactly one metadata comment on its own line:
{comment} {META_TAG}: {{"qualityScore": 0-100, "coverage": "FULL|PARTIAL|MINIMAL", "skipped": [{{"name": "funcName", "reason": "why"}}]}}
"""


def build_user_prompt(
    profile: LanguageProfile,
    source: SourceUnit,
    test_file_path: str,
    signatures: list[FunctionSignature],
    max_source_chars: int = MAX_SOURCE_CHARS,
) -> str:
    code = source.content[:max_source_chars]
    if len(source.content) > max_source_chars:
        comment = "#" if profile.name == "python" else "//"
        code += f"\n{comment} ... [source truncated at {max_source_chars} chars]"

    if signatures:
        inventory = "\n".join(
            f"  - {s.name}({s.parameter_count} params) | async: {s.is_async} "
            f"| returns deferred: {s.returns_deferred} | complexity: {s.complexity.value}"
            for s in signatures
        )
    else:
        inventory = "  (none detected by the quick scan — read the source yourself)"

    return f"""\
## Source file
Path: `{source.file_path}`
Test file will be saved at: `{test_file_path}`

## Exported functions (heuristic scan, may be incomplete)
{inventory}

## Source code
```{profile.fence_language(source.file_path)}
{code}
```

## Instructions
1. Write a complete {profile.framework} test file for the source above.
2. Import the code under test with: `{profile.import_hint(source.file_path, test_file_path)}`
3. Mock every external module the source imports.
4. Cover happy paths, edge cases and error scenarios for every exported function.
5. Do NOT use real credentials, real services or any I/O.

Write the complete test file now:"""


# ── Output parsing ───────────────────────────────────────────────────

def parse_generated_suite(
    response_text: str,
    test_file_path: str,
    signatures: list[FunctionSignature],
    profile: LanguageProfile,
) -> GeneratedTestSuite:
    """Validate and normalise raw model output.

    Raises:
        GenerationValidationError: no test construct with an assertion,
            or the code is shorter than ``MIN_TEST_CHARS``.
    """
    code = strip_code_fences((response_text or "").strip())

    if (
        len(code) < MIN_TEST_CHARS
        or not profile.test_construct.search(code)
        or not profile.assertion_marker.search(code)
    ):
        raise GenerationValidationError(
            f"Model output does not look like a {profile.framework} test file "
            f"({len(code)} chars). Preview: {code[:200]!r}"
        )

    suite = GeneratedTestSuite(
        test_file_path=test_file_path,
        test_code=code,
        test_case_count=len(profile.test_construct.findall(code)),
    )

    meta_match = _META_LINE.search(code)
    coverage = _apply_meta(suite, meta_match.group(1)) if meta_match else None
    suite.coverage = coverage or infer_coverage(code, signatures)
    return suite


def _apply_meta(suite: GeneratedTestSuite, raw: str) -> Coverage | None:
    """Copy quality and skipped functions onto *suite*; return the reported coverage, if valid."""
    meta = extract_json(raw)
    if meta is not None:
        suite.quality_score = _clamp_quality(meta.get("qualityScore", meta.get("quality_score")))
        suite.skipped_functions = _normalise_skipped(meta.get("skipped"))
        return _coerce_coverage(meta.get("coverage"))

    logger.warning("Could not parse %s JSON — falling back to heuristics", META_TAG)
    quality = _META_QUALITY.search(raw)
    if quality:
        suite.quality_score = _clamp_quality(int(quality.group(1)))
    coverage = _META_COVERAGE.search(raw)
    return Coverage(coverage.group(1).upper()) if coverage else None


def infer_coverage(code: str, signatures: list[FunctionSignature]) -> Coverage:
    """Best-effort coverage from how many detected names the tests mention."""
    total = len(signatures)
    mentioned = sum(1 for s in signatures if s.name in code)
    if total == 0 or mentioned == total:
        return Coverage.FULL
    if mentioned >= total * PARTIAL_COVERAGE_RATIO:
        return Coverage.PARTIAL
    return Coverage.MINIMAL


def _clamp_quality(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return DEFAULT_QUALITY
    if value != value:  # NaN
        return DEFAULT_QUALITY
    return int(max(0, min(100, round(value))))


def _coerce_coverage(value: Any) -> Coverage | None:
    if isinstance(value, str) and value.strip().upper() in Coverage.__members__:
        return Coverage(value.strip().upper())
    return None


def _normalise_skipped(value: Any) -> list[SkippedFunction]:
    if not isinstance(value, list):
        return []
    skipped: list[SkippedFunction] = []
    for item in value:
        if isinstance(item, dict) and item.get("name"):
            skipped.append(SkippedFunction(str(item["name"]), str(item.get("reason", ""))))
        elif isinstance(item, str) and item.strip():
            skipped.append(SkippedFunction(item.strip(), ""))
    return skipped


# ── Generator ────────────────────────────────────────────────────────

class TestGenerator:
    """Calls the generation model once per source unit."""

    __test__ = False  # not a pytest test class

    def __init__(self, model: ModelInvoker, max_source_chars: int = MAX_SOURCE_CHARS):
        self.model = model
        self.max_source_chars = max_source_chars

    async def generate(
        self,
        source: SourceUnit,
        signatures: list[FunctionSignature],
    ) -> GenerationResult:
        profile = profile_for_path(source.file_path)
        if profile is None:
            return GenerationResult(
                status=GenerationStatus.SKIPPED,
                test_file_path="",
                skip_reason=f"No language profile for {source.file_path}",
            )

        test_file_path = profile.derive_test_path(source.file_path)
        system_prompt = build_system_prompt(profile, source.file_path)
        user_prompt = build_user_prompt(
            profile, source, test_file_path, signatures, self.max_source_chars,
        )

        started = time.monotonic()
        try:
            response = await self.model.invoke(
                GENERATION_ROLE,
                system_prompt,
                user_prompt,
                MAX_TOKENS,
                GENERATION_TEMPERATURE,
            )
        except ModelInvocationError as exc:
            logger.error("Test generation for %s failed: %s", source.file_path, exc)
            return GenerationResult(
                status=GenerationStatus.FAILED,
                test_file_path=test_file_path,
                detected_functions=list(signatures),
                skip_reason=f"Generation model invocation failed: {exc.reason}",
                latency_ms=int((time.monotonic() - started) * 1000),
            )

        latency_ms = response.latency_ms or int((time.monotonic() - started) * 1000)
        try:
            suite = parse_generated_suite(response.text, test_file_path, signatures, profile)
        except GenerationValidationError as exc:
            logger.error("Generated tests for %s rejected: %s", source.file_path, exc)
            return GenerationResult(
                status=GenerationStatus.FAILED,
                test_file_path=test_file_path,
                detected_functions=list(signatures),
                skip_reason=f"Generated output failed validation: {exc}",
                latency_ms=latency_ms,
            )

        logger.info(
            "Generated %d test case(s) for %s → %s | coverage=%s quality=%d",
            suite.test_case_count, source.file_path, test_file_path,
            suite.coverage.value, suite.quality_score,
        )
        return GenerationResult(
            status=GenerationStatus.SUCCESS,
            test_file_path=test_file_path,
            suite=suite,
            detected_functions=list(signatures),
            latency_ms=latency_ms,
        )
