"""Language profiles — everything that differs between Jest and pytest.

A profile bundles the eligibility patterns, the signature regexes, test
path derivation, the sandbox manifest and the install / test commands.
Commands are argument lists; a leading ``python`` token is resolved to
the right interpreter by the process runner.
"""

from __future__ import annotations

import json
import posixpath
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass

# Runner result files written inside the sandbox
JEST_RESULTS_FILE = "jest-results.json"
JUNIT_RESULTS_FILE = "pytest-results.xml"

# pip --target directory inside the sandbox
PYTHON_DEPS_DIR = ".sandbox-deps"


@dataclass(frozen=True)
class SkipPattern:
    label: str
    regex: re.Pattern[str]


def _skip(label: str, pattern: str) -> SkipPattern:
    return SkipPattern(label, re.compile(pattern))


def normalize_path(file_path: str) -> str:
    """Posix separators, no leading ``./``."""
    path = file_path.replace("\\", "/")
    while path.startswith("./"):
        path = path[2:]
    return path


def _strip_src(path: str) -> str:
    return path[4:] if path.startswith("src/") else path


class LanguageProfile(ABC):
    """Per-language knobs used by every pipeline stage."""

    name: str = "base"
    runtime: str = ""                 # "node" | "python"; picks the sandbox image
    framework: str = ""               # human-readable runner name for prompts
    extensions: frozenset[str] = frozenset()
    skip_patterns: tuple[SkipPattern, ...] = ()
    export_patterns: tuple[re.Pattern[str], ...] = ()
    branch_keywords: re.Pattern[str] = re.compile(r"$^")
    deferred_marker: re.Pattern[str] = re.compile(r"$^")
    test_construct: re.Pattern[str] = re.compile(r"$^")
    assertion_marker: re.Pattern[str] = re.compile(r"$^")
    error_markers: tuple[str, ...] = ()
    error_exit_codes: frozenset[int] = frozenset()
    results_file: str = ""
    results_format: str = ""          # "jest-json" | "junit-xml"

    def matches(self, file_path: str) -> bool:
        return posixpath.splitext(file_path)[1].lower() in self.extensions

    def fence_language(self, file_path: str) -> str:
        return self.name

    @abstractmethod
    def derive_test_path(self, file_path: str) -> str:
        """Deterministic test location for *file_path*."""

    @abstractmethod
    def import_hint(self, file_path: str, test_file_path: str) -> str:
        """Import statement the generated test should use."""

    @abstractmethod
    def manifest_files(self, file_path: str, test_file_path: str) -> dict[str, str]:
        """Files that make the sandbox self-contained (relative path → text)."""

    @abstractmethod
    def install_command(self) -> list[str]:
        ...

    @abstractmethod
    def test_command(self, test_file_path: str) -> list[str]:
        ...

    def environment(self) -> dict[str, str]:
        return {}

    def __repr__(self) -> str:
        return f"<LanguageProfile: {self.name}>"


# ── JavaScript / TypeScript (Jest) ───────────────────────────────────

class JavaScriptProfile(LanguageProfile):
    name = "javascript"
    runtime = "node"
    framework = "Jest"
    extensions = frozenset({".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs"})
    skip_patterns = (
        _skip(".test.", r"\.test\."),
        _skip(".spec.", r"\.spec\."),
        _skip(".d.ts", r"\.d\.ts$"),
        _skip("/mocks/", r"/_{0,2}mocks_{0,2}/"),
        _skip("/types/", r"/types/"),
        _skip("/interfaces/", r"/interfaces/"),
        _skip("index barrel", r"/index\.[cm]?[jt]sx?$"),
        _skip("config.ts", r"config\.[cm]?[jt]s$"),
        _skip(".config.", r"\.config\."),
        _skip("tsconfig", r"tsconfig"),
        _skip("logger.ts", r"/logger\.[cm]?[jt]s$"),
    )
    export_patterns = (
        re.compile(r"export\s+(const|function|class|async|default|type|interface)"),
        re.compile(r"module\.exports"),
    )
    branch_keywords = re.compile(r"\b(if|for|while|switch|catch)\b")
    deferred_marker = re.compile(r"Promise")
    test_construct = re.compile(r"\b(?:it|test)\s*\(")
    assertion_marker = re.compile(r"\bexpect\s*\(|\bassert\b")
    error_markers = ("SyntaxError", "Cannot find module", "Test suite failed to run")
    results_file = JEST_RESULTS_FILE
    results_format = "jest-json"

    def fence_language(self, file_path: str) -> str:
        ext = posixpath.splitext(file_path)[1].lower()
        return "typescript" if ext in (".ts", ".tsx") else "javascript"

    def derive_test_path(self, file_path: str) -> str:
        path = normalize_path(file_path)
        stem, ext = posixpath.splitext(path)
        return f"tests/{_strip_src(stem)}.test{ext}"

    def import_hint(self, file_path: str, test_file_path: str) -> str:
        source = posixpath.splitext(normalize_path(file_path))[0]
        rel = posixpath.relpath(source, posixpath.dirname(test_file_path) or ".")
        if not rel.startswith("."):
            rel = f"./{rel}"
        return f"import {{ ... }} from '{rel}'"

    def manifest_files(self, file_path: str, test_file_path: str) -> dict[str, str]:
        package = {
            "name": "selfheal-sandbox",
            "version": "1.0.0",
            "private": True,
            "scripts": {"test": "jest"},
            "dependencies": {},
            "devDependencies": {
                "jest": "^29.7.0",
                "ts-jest": "^29.1.0",
                "typescript": "^5.3.0",
                "@types/jest": "^29.5.0",
            },
            "jest": {
                "testEnvironment": "node",
                "testTimeout": 10000,
                "verbose": True,
                "forceExit": True,
                "transform": {"^.+\\.[cm]?[tj]sx?$": "ts-jest"},
                "testMatch": [f"**/{test_file_path}"],
            },
        }
        tsconfig = {
            "compilerOptions": {
                "target": "ES2020",
                "module": "commonjs",
                "strict": False,
                "allowJs": True,
                "esModuleInterop": True,
                "skipLibCheck": True,
                "jsx": "react",
                "outDir": "./dist",
            },
            "include": ["**/*"],
            "exclude": ["node_modules"],
        }
        return {
            "package.json": json.dumps(package, indent=2) + "\n",
            "tsconfig.json": json.dumps(tsconfig, indent=2) + "\n",
        }

    def install_command(self) -> list[str]:
        return ["npm", "install", "--prefer-offline", "--no-audit", "--no-fund", "--silent"]

    def test_command(self, test_file_path: str) -> list[str]:
        return [
            "npx", "--no-install", "jest", test_file_path,
            "--verbose",
            "--no-coverage",
            "--forceExit",
            "--json",
            f"--outputFile={JEST_RESULTS_FILE}",
            "--testTimeout=10000",
        ]

    def environment(self) -> dict[str, str]:
        return {"NODE_ENV": "test", "CI": "true", "npm_config_cache": ".npm-cache"}


# ── Python (pytest) ──────────────────────────────────────────────────

class PythonProfile(LanguageProfile):
    name = "python"
    runtime = "python"
    framework = "pytest"
    extensions = frozenset({".py"})
    skip_patterns = (
        _skip("test_*.py", r"/test_[^/]*\.py$"),
        _skip("*_test.py", r"_test\.py$"),
        _skip("/tests/", r"/tests?/"),
        _skip("conftest.py", r"/conftest\.py$"),
        _skip("__init__.py barrel", r"/__init__\.py$"),
        _skip("configuration module", r"/(setup|config|settings|noxfile)\.py$"),
        _skip("/migrations/", r"/migrations/"),
        _skip("type-only module", r"/_?(types|typing)\.py$"),
    )
    export_patterns = (
        re.compile(r"^(?:async\s+)?def\s+[A-Za-z]\w*\s*\(", re.MULTILINE),
        re.compile(r"^class\s+[A-Za-z]\w*", re.MULTILINE),
        re.compile(r"^__all__\s*=", re.MULTILINE),
    )
    branch_keywords = re.compile(r"\b(if|elif|for|while|except|match)\b")
    deferred_marker = re.compile(r"\b(Awaitable|Coroutine|Future)\b")
    test_construct = re.compile(r"^\s*(?:async\s+)?def\s+test_\w*\s*\(", re.MULTILINE)
    assertion_marker = re.compile(r"\bassert\b|pytest\.raises|\.assert_\w+\(")
    error_markers = (
        "ImportError",
        "ModuleNotFoundError",
        "SyntaxError",
        "IndentationError",
        "errors during collection",
    )
    # pytest: 2 interrupted, 3 internal error, 4 usage error, 5 no tests collected
    error_exit_codes = frozenset({2, 3, 4, 5})
    results_file = JUNIT_RESULTS_FILE
    results_format = "junit-xml"

    def derive_test_path(self, file_path: str) -> str:
        path = _strip_src(normalize_path(file_path))
        directory, filename = posixpath.split(path)
        test_name = f"test_{filename}"
        return posixpath.join("tests", directory, test_name) if directory else f"tests/{test_name}"

    def module_name(self, file_path: str) -> str:
        path = _strip_src(normalize_path(file_path))
        return posixpath.splitext(path)[0].replace("/", ".")

    def import_hint(self, file_path: str, test_file_path: str) -> str:
        return f"from {self.module_name(file_path)} import ..."

    def manifest_files(self, file_path: str, test_file_path: str) -> dict[str, str]:
        return {
            "requirements.txt": "pytest>=7.0\n",
            "pytest.ini": (
                "[pytest]\n"
                "pythonpath = . src\n"
                "addopts = -p no:cacheprovider\n"
            ),
        }

    def install_command(self) -> list[str]:
        return [
            "python", "-m", "pip", "install",
            "--quiet",
            "--disable-pip-version-check",
            "--no-input",
            "--target", PYTHON_DEPS_DIR,
            "-r", "requirements.txt",
        ]

    def test_command(self, test_file_path: str) -> list[str]:
        return [
            "python", "-m", "pytest", test_file_path,
            "-rA",
            "--import-mode=importlib",
            f"--junitxml={JUNIT_RESULTS_FILE}",
        ]

    def environment(self) -> dict[str, str]:
        return {"PYTHONPATH": PYTHON_DEPS_DIR, "PYTHONDONTWRITEBYTECODE": "1"}


# ── Registry ─────────────────────────────────────────────────────────

PROFILES: dict[str, LanguageProfile] = {
    p.name: p for p in (JavaScriptProfile(), PythonProfile())
}


def profile_for_path(file_path: str) -> LanguageProfile | None:
    """Return the profile handling *file_path*'s extension, if any."""
    for profile in PROFILES.values():
        if profile.matches(file_path):
            return profile
    return None


def get_profile(name: str) -> LanguageProfile:
    if name not in PROFILES:
        raise KeyError(f"Unknown language profile '{name}'. Available: {list(PROFILES)}")
    return PROFILES[name]


def supported_extensions() -> list[str]:
    return sorted(ext for p in PROFILES.values() for ext in p.extensions)
