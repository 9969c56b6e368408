"""Sandbox – isolated test execution and result parsing."""

from sandbox.executor import SandboxExecutor, SandboxStage, classify_status
from sandbox.output_parser import ParsedResults, build_failure_summary, parse_results
from sandbox.runners import (
    DockerProcessRunner,
    LocalProcessRunner,
    ProcessResult,
    ProcessRunner,
    build_runner,
)

__all__ = [
    "SandboxExecutor",
    "SandboxStage",
    "classify_status",
    "ParsedResults",
    "build_failure_summary",
    "parse_results",
    "DockerProcessRunner",
    "LocalProcessRunner",
    "ProcessResult",
    "ProcessRunner",
    "build_runner",
]
