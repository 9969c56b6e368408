"""Eligibility filter — decides whether a changed file is worth testing.

Purely advisory: a rejection carries a human-readable reason and ends
the pipeline with SKIPPED.  Never raises.
"""

from __future__ import annotations

import logging
import posixpath

from shared.languages import normalize_path, profile_for_path, supported_extensions
from shared.schemas import EligibilityResult

logger = logging.getLogger(__name__)

# Trimmed content below this is treated as a stub
MIN_CONTENT_CHARS = 100


def check_eligibility(file_path: str, source_text: str) -> EligibilityResult:
    """Return whether *file_path* should get a generated test suite."""
    path = normalize_path(file_path)
    profile = profile_for_path(path)

    if profile is None:
        ext = posixpath.splitext(path)[1] or "(none)"
        return _reject(
            path,
            f"Unsupported file extension '{ext}'. "
            f"Supported: {', '.join(supported_extensions())}",
        )

    # Leading slash so directory patterns also match at the repo root
    anchored = "/" + path
    for skip in profile.skip_patterns:
        if skip.regex.search(anchored):
            return _reject(
                path,
                f"File matches non-testable pattern '{skip.label}' "
                "(existing test, type definitions, configuration or barrel export)",
                profile.name,
            )

    if not any(p.search(source_text or "") for p in profile.export_patterns):
        return _reject(path, "No exported functions, classes or constants found", profile.name)

    trimmed = (source_text or "").strip()
    if len(trimmed) < MIN_CONTENT_CHARS:
        return _reject(
            path,
            f"File too short to test meaningfully ({len(trimmed)} < {MIN_CONTENT_CHARS} chars)",
            profile.name,
        )

    return EligibilityResult(eligible=True, language=profile.name)


def _reject(path: str, reason: str, language: str | None = None) -> EligibilityResult:
    logger.info("Skipping %s: %s", path, reason)
    return EligibilityResult(eligible=False, reason=reason, language=language)
