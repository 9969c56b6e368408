#!/usr/bin/env python3
"""Self-heal command line — generate, run and heal tests for one source file.

Usage::

    # Local working tree, fixes written to disk (and committed with --commit):
    python3 selfheal.py run src/math.ts --repo /path/to/clone

    # GitHub repository pinned to a commit, fixes pushed via the contents API:
    python3 selfheal.py run src/math.ts --github org/repo --ref 1a2b3c4

    # Docker sandbox, tighter budget, JSON report:
    python3 selfheal.py run app/cart.py --repo . --sandbox docker \\
                        --max-attempts 2 --report out/cart.json

Exit codes: 0 the suite passes, 1 escalated or failed, 2 skipped.
Model endpoint, credentials and sandbox limits come from the environment
(or ``.env``); see ``services/config.py``.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

# Ensure project root is importable
_ROOT = Path(__file__).resolve().parent
if str(_ROOT) not in sys.path:
    sys.path.insert(0, str(_ROOT))

from agents.base import AttemptHistory, Capabilities
from agents.heal_loop import HealLoopReport, LoopStatus, run_heal_loop
from agents.loop_controller import LoopController
from agents.pipeline import SelfHealPipeline
from sandbox.executor import SandboxExecutor
from sandbox.runners import build_runner
from services.attempt_store import InMemoryAttemptStore, JsonlAttemptStore
from services.config import Settings, load_settings
from services.github_service import GitHubRepository, LocalRepository
from services.logging_setup import configure_logging
from services.model_client import ModelClient
from shared.errors import ConfigurationError

EXIT_PASSED = 0
EXIT_FAILED = 1
EXIT_SKIPPED = 2

_EXIT_CODES = {
    LoopStatus.PASSED: EXIT_PASSED,
    LoopStatus.ESCALATED: EXIT_FAILED,
    LoopStatus.FAILED: EXIT_FAILED,
    LoopStatus.SKIPPED: EXIT_SKIPPED,
}


# ── Wiring ───────────────────────────────────────────────────────────

def build_capabilities(settings: Settings, args: argparse.Namespace) -> Capabilities:
    """Build the capability bundle once; everything downstream receives it."""
    repo_name = args.github or ""
    if args.repo:
        repository = LocalRepository(args.repo, commit=args.commit)
    elif repo_name or settings.GITHUB_REPO:
        repository = GitHubRepository(
            repo_name or settings.GITHUB_REPO,
            token=settings.GITHUB_TOKEN,
            branch=settings.PUBLISH_BRANCH,
        )
    else:
        raise ConfigurationError("Pass --repo PATH or --github owner/name (or set GITHUB_REPO)")

    history: AttemptHistory
    if settings.ATTEMPT_STORE_PATH:
        history = JsonlAttemptStore(settings.ATTEMPT_STORE_PATH)
    else:
        history = InMemoryAttemptStore()

    return Capabilities(
        source=repository,
        model=ModelClient.from_settings(settings),
        history=history,
        publisher=None if args.no_publish else repository,
    )


def build_pipeline(settings: Settings, capabilities: Capabilities) -> SelfHealPipeline:
    runner = build_runner(
        settings.SANDBOX_BACKEND,
        images=settings.sandbox_images,
        memory_limit=settings.SANDBOX_MEMORY_LIMIT,
        cpu_limit=settings.SANDBOX_CPU_LIMIT,
    )
    executor = SandboxExecutor(
        runner=runner,
        workspace_root=settings.SANDBOX_ROOT or None,
        timeout_s=settings.SANDBOX_TIMEOUT,
        install_timeout_s=settings.SANDBOX_INSTALL_TIMEOUT,
        output_limit=settings.SANDBOX_OUTPUT_LIMIT,
        install_deps=settings.SANDBOX_INSTALL_DEPS,
    )
    return SelfHealPipeline(
        capabilities,
        executor=executor,
        controller=LoopController(settings.MAX_HEAL_ATTEMPTS),
    )


def _print_progress(stage: str, status: str, message: str) -> None:
    print(f"  [{stage:<9}] {status:<17} {message}", flush=True)


def _settings_overrides(args: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    if args.max_attempts is not None:
        overrides["MAX_HEAL_ATTEMPTS"] = args.max_attempts
    if args.sandbox:
        overrides["SANDBOX_BACKEND"] = args.sandbox
    if args.verbose:
        overrides["LOG_LEVEL"] = "DEBUG"
    return overrides


def write_report(report: HealLoopReport, path: str) -> Path:
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(json.dumps(report.to_dict(), indent=2, ensure_ascii=False) + "\n")
    return out


# ── Commands ─────────────────────────────────────────────────────────

def cmd_run(args: argparse.Namespace) -> int:
    try:
        settings = load_settings(**_settings_overrides(args))
        configure_logging(settings)
        capabilities = build_capabilities(settings, args)
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return EXIT_FAILED

    pipeline = build_pipeline(settings, capabilities)

    print(f"=== Self-heal: {args.file} (max {pipeline.max_attempts} attempts) ===\n")
    report = asyncio.run(run_heal_loop(
        pipeline,
        args.file,
        commit_ref=args.ref,
        on_progress=None if args.quiet else _print_progress,
    ))

    print(f"\nResult: {report.status} after {report.attempts_used} attempt(s)")
    if report.reason:
        print(f"Reason: {report.reason}")
    if report.escalation_report:
        print("\n" + report.escalation_report)

    if args.report:
        out = write_report(report, args.report)
        print(f"\nReport written to {out}")

    return _EXIT_CODES.get(report.status, EXIT_FAILED)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="selfheal",
        description="Generate unit tests for a source file and heal them until they pass",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run the generate → execute → heal loop for one file")
    run.add_argument("file", help="Repository-relative path of the source file")
    target = run.add_mutually_exclusive_group()
    target.add_argument("--repo", default="", help="Local working tree to read and fix")
    target.add_argument("--github", default="", metavar="OWNER/NAME", help="GitHub repository")
    run.add_argument("--ref", default="", help="Commit to pin source reads to (default: HEAD)")
    run.add_argument("--max-attempts", type=int, default=None, help="Healing attempts before escalation")
    run.add_argument("--sandbox", choices=("local", "docker"), default=None, help="Sandbox backend")
    run.add_argument("--report", default="", help="Write the loop report as JSON to this path")
    run.add_argument("--commit", action="store_true", help="Commit fixes in the local working tree")
    run.add_argument("--no-publish", action="store_true", help="Keep fixes in memory only")
    run.add_argument("--quiet", action="store_true", help="No per-stage progress lines")
    run.add_argument("--verbose", action="store_true", help="Debug logging")
    run.set_defaults(func=cmd_run)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
