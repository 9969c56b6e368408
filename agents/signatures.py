"""Signature extractor — a fast regex inventory of exported functions.

This is a heuristic, not a parser.  The result is only prompt context
for the test generator (and the coverage fallback); it is never used
to decide correctness.  Nested, re-exported or oddly formatted
definitions may be missed.
"""

from __future__ import annotations

import re

from shared.languages import LanguageProfile, get_profile
from shared.schemas import Complexity, FunctionSignature

# Characters scanned after a definition for branches / deferred markers
COMPLEXITY_WINDOW = 500
HIGH_BRANCHES = 5
MEDIUM_BRANCHES = 2

_JS_FUNCTION = re.compile(r"export\s+(async\s+)?function\s*\*?\s*(\w+)\s*\(([^)]*)\)")
_JS_ARROW = re.compile(
    r"export\s+const\s+(\w+)\s*(?::\s*[^=]+)?=\s*(async\s+)?\(([^)]*)\)"
    r"\s*(?::\s*[\w<>,\[\]\s|.]+)?\s*=>"
)
_PY_FUNCTION = re.compile(
    r"^(async\s+)?def\s+([A-Za-z]\w*)\s*\(([^)]*)\)",
    re.MULTILINE,
)

# Python parameters that are not real arguments
_PY_NON_PARAMS = {"self", "cls", "*", "/"}


def extract_signatures(source_text: str, language: str) -> list[FunctionSignature]:
    """Inventory exported functions of *source_text* for *language*.

    First occurrence of a name wins.  Returns ``[]`` for unknown
    languages or empty input.
    """
    if not source_text:
        return []
    try:
        profile = get_profile(language)
    except KeyError:
        return []

    if profile.name == "python":
        matches = [
            (m.start(), m.group(2), bool(m.group(1)), _count_python_params(m.group(3)))
            for m in _PY_FUNCTION.finditer(source_text)
        ]
    else:
        matches = [
            (m.start(), m.group(2), bool(m.group(1)), _count_js_params(m.group(3)))
            for m in _JS_FUNCTION.finditer(source_text)
        ]
        matches += [
            (m.start(), m.group(1), bool(m.group(2)), _count_js_params(m.group(3)))
            for m in _JS_ARROW.finditer(source_text)
        ]
        matches.sort(key=lambda item: item[0])

    seen: set[str] = set()
    signatures: list[FunctionSignature] = []
    for start, name, is_async, param_count in matches:
        if name in seen:
            continue
        seen.add(name)
        window = source_text[start:start + COMPLEXITY_WINDOW]
        signatures.append(FunctionSignature(
            name=name,
            parameter_count=param_count,
            is_async=is_async,
            returns_deferred=is_async or bool(profile.deferred_marker.search(window)),
            complexity=estimate_complexity(window, profile),
        ))
    return signatures


def estimate_complexity(window: str, profile: LanguageProfile) -> Complexity:
    branches = len(profile.branch_keywords.findall(window))
    if branches > HIGH_BRANCHES:
        return Complexity.HIGH
    if branches > MEDIUM_BRANCHES:
        return Complexity.MEDIUM
    return Complexity.LOW


def _split_params(raw: str) -> list[str]:
    return [p.strip() for p in raw.split(",") if p.strip()]


def _count_js_params(raw: str) -> int:
    return len(_split_params(raw))


def _count_python_params(raw: str) -> int:
    count = 0
    for param in _split_params(raw):
        name = re.split(r"[:=]", param, maxsplit=1)[0].strip()
        if name in _PY_NON_PARAMS:
            continue
        count += 1
    return count
