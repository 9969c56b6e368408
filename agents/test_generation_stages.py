"""Tests for the stages before execution: eligibility, signatures, generation.

Run:
    python -m pytest agents/test_generation_stages.py -v
"""

from __future__ import annotations

import asyncio
import sys
import textwrap
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

_ROOT = Path(__file__).resolve().parent.parent
if str(_ROOT) not in sys.path:
    sys.path.insert(0, str(_ROOT))

from agents.base import ModelResponse
from agents.eligibility import check_eligibility
from agents.generator import TestGenerator, build_user_prompt, infer_coverage, parse_generated_suite
from agents.signatures import extract_signatures
from shared.determinism import GENERATION_ROLE, GENERATION_TEMPERATURE
from shared.errors import GenerationValidationError, ModelInvocationError
from shared.languages import get_profile
from shared.schemas import Complexity, Coverage, GenerationStatus, SourceUnit

TS_SOURCE = textwrap.dedent("""\
    import { db } from './db';

    export async function fetchUser(id: string, opts?: Options): Promise<User> {
      if (!id) throw new Error('missing id');
      return db.get(id);
    }

    export const add = (a: number, b: number): number => a + b;

    export function classify(n: number) {
      if (n < 0) return 'neg';
      if (n === 0) return 'zero';
      for (const x of [1, 2]) { if (x > n) return 'small'; }
      while (false) {}
      switch (n) { default: return 'big'; }
    }
""")

PY_SOURCE = textwrap.dedent("""\
    import requests


    def total(items, *, tax=0.0):
        if not items:
            return 0
        return sum(items) * (1 + tax)


    async def fetch(url: str) -> dict:
        return requests.get(url).json()


    def _private(x):
        return x


    class Cart:
        def add(self, item):
            return item
""")

JEST_SUITE = textwrap.dedent("""\
    import { add, fetchUser } from '../src/user';

    describe('add', () => {
      it('adds two numbers', () => {
        expect(add(1, 2)).toBe(3);
      });
      test('handles negatives', () => {
        expect(add(-1, -2)).toBe(-3);
      });
    });
""")


# ── Eligibility ──────────────────────────────────────────────────────

class TestEligibility:

    def test_typescript_source_is_eligible(self):
        result = check_eligibility("src/user.ts", TS_SOURCE)
        assert result.eligible
        assert result.language == "javascript"

    def test_python_source_is_eligible(self):
        result = check_eligibility("src/shop/cart.py", PY_SOURCE)
        assert result.eligible
        assert result.language == "python"

    @pytest.mark.parametrize("path", [
        "src/user.test.ts",
        "src/user.spec.js",
        "src/types/user.ts",
        "src/global.d.ts",
        "src/index.ts",
        "jest.config.js",
        "src/__mocks__/db.ts",
        "tests/test_cart.py",
        "pkg/conftest.py",
        "pkg/__init__.py",
        "pkg/settings.py",
    ])
    def test_non_testable_patterns_are_skipped(self, path):
        result = check_eligibility(path, TS_SOURCE + PY_SOURCE)
        assert not result.eligible
        assert "non-testable pattern" in result.reason

    def test_unsupported_extension(self):
        result = check_eligibility("README.md", "# hello")
        assert not result.eligible
        assert ".md" in result.reason
        assert result.language is None

    def test_no_exports(self):
        body = "const internal = 1;\n" * 20
        result = check_eligibility("src/internal.ts", body)
        assert not result.eligible
        assert "No exported" in result.reason

    def test_too_short(self):
        result = check_eligibility("src/tiny.ts", "export const a = 1;")
        assert not result.eligible
        assert "too short" in result.reason


# ── Signatures ───────────────────────────────────────────────────────

class TestSignatures:

    def test_typescript_functions_and_arrows(self):
        sigs = {s.name: s for s in extract_signatures(TS_SOURCE, "javascript")}
        assert list(sigs) == ["fetchUser", "add", "classify"]
        assert sigs["fetchUser"].is_async
        assert sigs["fetchUser"].returns_deferred
        assert sigs["fetchUser"].parameter_count == 2
        assert sigs["add"].parameter_count == 2
        assert not sigs["add"].is_async
        assert sigs["classify"].complexity is Complexity.HIGH

    def test_python_top_level_public_functions(self):
        sigs = {s.name: s for s in extract_signatures(PY_SOURCE, "python")}
        assert list(sigs) == ["total", "fetch"]
        assert sigs["total"].parameter_count == 2   # bare * is not a parameter
        assert sigs["fetch"].is_async
        assert sigs["total"].complexity is Complexity.LOW

    def test_first_occurrence_wins(self):
        src = "export function dup(a) {}\nexport function dup(a, b, c) {}\n"
        sigs = extract_signatures(src, "javascript")
        assert len(sigs) == 1
        assert sigs[0].parameter_count == 1

    def test_unknown_language_or_empty(self):
        assert extract_signatures(TS_SOURCE, "cobol") == []
        assert extract_signatures("", "python") == []


# ── Generation ───────────────────────────────────────────────────────

class TestParseGeneratedSuite:

    def _sigs(self):
        return extract_signatures(TS_SOURCE, "javascript")

    def test_fenced_output_with_metadata(self):
        text = (
            "Here you go:\n```typescript\n" + JEST_SUITE +
            '// @selfheal-meta: {"qualityScore": 91, "coverage": "PARTIAL", '
            '"skipped": [{"name": "classify", "reason": "pure branching"}]}\n```\n'
        )
        suite = parse_generated_suite(text, "tests/user.test.ts", self._sigs(), get_profile("javascript"))
        assert suite.test_case_count == 2
        assert suite.quality_score == 91
        assert suite.coverage is Coverage.PARTIAL
        assert [s.name for s in suite.skipped_functions] == ["classify"]
        assert not suite.test_code.startswith("```")

    def test_malformed_metadata_falls_back_to_heuristics(self):
        text = JEST_SUITE + "// @selfheal-meta: qualityScore=150, coverage: minimal, oops\n"
        suite = parse_generated_suite(text, "t", self._sigs(), get_profile("javascript"))
        assert suite.quality_score == 100
        assert suite.coverage is Coverage.MINIMAL

    def test_missing_metadata_infers_coverage(self):
        suite = parse_generated_suite(JEST_SUITE, "t", self._sigs(), get_profile("javascript"))
        # add and fetchUser mentioned, classify not: 2/3 >= 0.6
        assert suite.coverage is Coverage.PARTIAL
        assert suite.quality_score == 70

    def _covered_sigs(self):
        return [s for s in self._sigs() if s.name != "classify"]

    def test_metadata_without_coverage_infers_it(self):
        text = JEST_SUITE + '// @selfheal-meta: {"qualityScore": 80, "skipped": []}\n'
        suite = parse_generated_suite(text, "t", self._covered_sigs(), get_profile("javascript"))
        assert suite.quality_score == 80
        assert suite.coverage is Coverage.FULL

    def test_unknown_coverage_value_infers_it(self):
        text = JEST_SUITE + '// @selfheal-meta: {"coverage": "EVERYTHING"}\n'
        suite = parse_generated_suite(text, "t", self._covered_sigs(), get_profile("javascript"))
        assert suite.coverage is Coverage.FULL
        no_names = parse_generated_suite(text, "t", [], get_profile("javascript"))
        assert no_names.coverage is Coverage.FULL
        minimal = parse_generated_suite(
            text.replace("fetchUser", "loadUser").replace("add", "sum"), "t", self._sigs(), get_profile("javascript"),
        )
        assert minimal.coverage is Coverage.MINIMAL

    def test_malformed_metadata_without_coverage_infers_it(self):
        text = JEST_SUITE + "// @selfheal-meta: qualityScore=60, oops\n"
        suite = parse_generated_suite(text, "t", self._covered_sigs(), get_profile("javascript"))
        assert suite.quality_score == 60
        assert suite.coverage is Coverage.FULL

    @pytest.mark.parametrize("text", [
        "",
        "I cannot write tests for this file.",
        "describe('x', () => { it('does nothing', () => { console.log('no assertions here at all, really none'); }); });",
    ])
    def test_invalid_output_rejected(self, text):
        with pytest.raises(GenerationValidationError):
            parse_generated_suite(text, "t", [], get_profile("javascript"))

    def test_infer_coverage_minimal(self):
        sigs = self._sigs()
        assert infer_coverage("nothing relevant", sigs) is Coverage.MINIMAL
        assert infer_coverage("anything", []) is Coverage.FULL


class TestTestGenerator:

    def _source(self) -> SourceUnit:
        return SourceUnit("src/user.ts", TS_SOURCE, "abc123")

    def test_success(self):
        model = AsyncMock()
        model.invoke.return_value = ModelResponse(JEST_SUITE, latency_ms=42)
        result = asyncio.run(TestGenerator(model).generate(self._source(), []))

        assert result.status is GenerationStatus.SUCCESS
        assert result.test_file_path == "tests/user.test.ts"
        assert result.suite.test_case_count == 2
        assert result.latency_ms == 42
        args = model.invoke.await_args.args
        assert args[0] == GENERATION_ROLE
        assert args[4] == GENERATION_TEMPERATURE
        assert "src/user.ts" in args[2]

    def test_transport_failure(self):
        model = AsyncMock()
        model.invoke.side_effect = ModelInvocationError("generation", "HTTP 503 from model endpoint", 503)
        result = asyncio.run(TestGenerator(model).generate(self._source(), []))
        assert result.status is GenerationStatus.FAILED
        assert "HTTP 503" in result.skip_reason

    def test_validation_failure(self):
        model = AsyncMock()
        model.invoke.return_value = ModelResponse("Sorry, no.")
        result = asyncio.run(TestGenerator(model).generate(self._source(), []))
        assert result.status is GenerationStatus.FAILED
        assert "validation" in result.skip_reason

    def test_unsupported_language_skips_without_model_call(self):
        model = AsyncMock()
        result = asyncio.run(TestGenerator(model).generate(SourceUnit("a.rb", "x"), []))
        assert result.status is GenerationStatus.SKIPPED
        model.invoke.assert_not_awaited()

    def test_prompt_truncates_large_sources(self):
        source = SourceUnit("src/big.py", "x = 1\n" * 5000)
        prompt = build_user_prompt(get_profile("python"), source, "tests/test_big.py", [], 1000)
        assert "# ... [source truncated at 1000 chars]" in prompt
        assert "from big import ..." in prompt
