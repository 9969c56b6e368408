"""Unit tests for the language profiles.

Run:
    python -m pytest shared/test_languages.py -v
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest

_ROOT = Path(__file__).resolve().parent.parent
if str(_ROOT) not in sys.path:
    sys.path.insert(0, str(_ROOT))

from shared.languages import (
    JEST_RESULTS_FILE,
    JUNIT_RESULTS_FILE,
    get_profile,
    normalize_path,
    profile_for_path,
    supported_extensions,
)


class TestRegistry:

    @pytest.mark.parametrize("path,expected", [
        ("src/utils/math.ts", "javascript"),
        ("lib/widget.jsx", "javascript"),
        ("pkg/core.py", "python"),
    ])
    def test_profile_for_path(self, path, expected):
        assert profile_for_path(path).name == expected

    def test_unknown_extension(self):
        assert profile_for_path("README.md") is None

    def test_get_profile_unknown(self):
        with pytest.raises(KeyError):
            get_profile("cobol")

    def test_supported_extensions_sorted(self):
        exts = supported_extensions()
        assert exts == sorted(exts)
        assert ".py" in exts and ".ts" in exts

    def test_normalize_path(self):
        assert normalize_path(".\\src\\a.ts") == "src/a.ts"


class TestJavaScriptProfile:

    profile = get_profile("javascript")

    def test_test_path_strips_src(self):
        assert self.profile.derive_test_path("src/utils/math.ts") == "tests/utils/math.test.ts"

    def test_test_path_keeps_other_roots(self):
        assert self.profile.derive_test_path("lib/a.js") == "tests/lib/a.test.js"

    def test_import_hint_is_relative(self):
        hint = self.profile.import_hint("src/utils/math.ts", "tests/utils/math.test.ts")
        assert "'../../src/utils/math'" in hint

    def test_manifest_is_valid_json(self):
        files = self.profile.manifest_files("src/a.ts", "tests/a.test.ts")
        package = json.loads(files["package.json"])
        assert package["devDependencies"]["jest"] == "^29.7.0"
        assert package["jest"]["testMatch"] == ["**/tests/a.test.ts"]
        assert json.loads(files["tsconfig.json"])["compilerOptions"]["allowJs"] is True

    def test_test_command_writes_json(self):
        cmd = self.profile.test_command("tests/a.test.ts")
        assert "tests/a.test.ts" in cmd
        assert f"--outputFile={JEST_RESULTS_FILE}" in cmd

    def test_fence_language(self):
        assert self.profile.fence_language("a.tsx") == "typescript"
        assert self.profile.fence_language("a.js") == "javascript"


class TestPythonProfile:

    profile = get_profile("python")

    def test_test_path(self):
        assert self.profile.derive_test_path("src/pkg/mod.py") == "tests/pkg/test_mod.py"
        assert self.profile.derive_test_path("mod.py") == "tests/test_mod.py"

    def test_import_hint_uses_module_path(self):
        assert self.profile.import_hint("src/pkg/mod.py", "") == "from pkg.mod import ..."

    def test_manifest_sets_pythonpath(self):
        files = self.profile.manifest_files("pkg/mod.py", "tests/pkg/test_mod.py")
        assert "pythonpath = . src" in files["pytest.ini"]
        assert files["requirements.txt"].startswith("pytest")

    def test_test_command_writes_junit(self):
        cmd = self.profile.test_command("tests/test_mod.py")
        assert cmd[:3] == ["python", "-m", "pytest"]
        assert f"--junitxml={JUNIT_RESULTS_FILE}" in cmd

    def test_usage_exit_codes_are_errors(self):
        assert 5 in self.profile.error_exit_codes
        assert 1 not in self.profile.error_exit_codes
