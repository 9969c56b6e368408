"""Repository adapters — commit-pinned reads and fix publication.

* :class:`GitHubRepository` talks to the GitHub contents API through
  PyGithub.  PyGithub is synchronous, so calls run in a worker thread.
* :class:`LocalRepository` works on a local checkout through the git CLI
  (``git show <ref>:<path>`` for pinned reads, ``git commit`` to publish).
"""

from __future__ import annotations

import asyncio
import logging
import subprocess
from pathlib import Path

from github import Github, GithubException

from agents.base import FixPublisher, SourceFetcher
from shared.errors import ConfigurationError, PublishError, SourceFetchError

logger = logging.getLogger(__name__)

# Returned by LocalRepository when a fix is written without committing
WORKING_TREE_REF = "working-tree"


# ── Git CLI wrapper ──────────────────────────────────────────────────

class GitCommandError(Exception):
    """Raised when a git subprocess exits with a non-zero code."""

    def __init__(self, cmd: list[str], code: int, stderr: str):
        self.cmd = cmd
        self.code = code
        self.stderr = stderr
        super().__init__(f"git {' '.join(cmd[1:])} failed (exit {code}): {stderr}")


def _run_git(args: list[str], cwd: str | Path) -> subprocess.CompletedProcess:
    """Run a git command and return the result."""
    cmd = ["git"] + args
    logger.debug("git %s  (cwd=%s)", " ".join(args), cwd)
    try:
        result = subprocess.run(
            cmd,
            cwd=str(cwd),
            capture_output=True,
            text=True,
            timeout=120,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        raise GitCommandError(cmd, -1, str(exc)) from exc
    if result.returncode != 0:
        logger.error("git %s failed: %s", " ".join(args), result.stderr.strip())
        raise GitCommandError(cmd, result.returncode, result.stderr.strip())
    return result


# ── GitHub (PyGithub) ────────────────────────────────────────────────

class GitHubRepository(SourceFetcher, FixPublisher):
    """Reads and writes one GitHub repository via the contents API."""

    def __init__(
        self,
        repo_name: str,
        token: str = "",
        branch: str = "",
        client: Github | None = None,
    ):
        self.repo_name = repo_name
        self.branch = branch
        self._token = token
        self._gh = client
        self._repo = None

    # -- PyGithub client (lazy) ----------------------------------------

    @property
    def gh(self) -> Github:
        if self._gh is None:
            if not self._token:
                raise ConfigurationError("GITHUB_TOKEN is not set")
            self._gh = Github(self._token)
        return self._gh

    @property
    def repo(self):
        if self._repo is None:
            self._repo = self.gh.get_repo(self.repo_name)
        return self._repo

    # -- SourceFetcher -------------------------------------------------

    async def fetch_source(self, path: str, ref: str = "") -> str:
        return await asyncio.to_thread(self._fetch_sync, path, ref)

    def _fetch_sync(self, path: str, ref: str) -> str:
        try:
            contents = (
                self.repo.get_contents(path, ref=ref) if ref else self.repo.get_contents(path)
            )
        except GithubException as exc:
            raise SourceFetchError(
                f"Cannot read {path}@{ref or 'HEAD'} from {self.repo_name}: HTTP {exc.status}"
            ) from exc
        if isinstance(contents, list):
            raise SourceFetchError(f"{path} is a directory, not a file")
        try:
            return contents.decoded_content.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise SourceFetchError(f"{path} is not UTF-8 text") from exc

    # -- FixPublisher --------------------------------------------------

    async def publish_fix(self, path: str, content: str, message: str) -> str:
        return await asyncio.to_thread(self._publish_sync, path, content, message)

    def _publish_sync(self, path: str, content: str, message: str) -> str:
        try:
            branch = self.branch or self.repo.default_branch
            try:
                existing = self.repo.get_contents(path, ref=branch)
            except GithubException as exc:
                if exc.status != 404:
                    raise
                existing = None

            if existing is None:
                result = self.repo.create_file(path, message, content, branch=branch)
            else:
                result = self.repo.update_file(path, message, content, existing.sha, branch=branch)
        except GithubException as exc:
            raise PublishError(
                f"GitHub rejected update of {path} on {self.repo_name}: HTTP {exc.status}"
            ) from exc

        sha = result["commit"].sha
        logger.info("Published %s to %s@%s (%s)", path, self.repo_name, branch, sha[:7])
        return sha

    def __repr__(self) -> str:
        return f"<GitHubRepository {self.repo_name} branch={self.branch or '(default)'}>"


# ── Local checkout (git CLI) ─────────────────────────────────────────

class LocalRepository(SourceFetcher, FixPublisher):
    """A working tree on disk.  Fixes are written and optionally committed."""

    def __init__(self, root: str | Path, commit: bool = False):
        self.root = Path(root).resolve()
        self.commit = commit

    def _resolve(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if target != self.root and self.root not in target.parents:
            raise ValueError(f"{path!r} is outside the repository")
        return target

    async def fetch_source(self, path: str, ref: str = "") -> str:
        return await asyncio.to_thread(self._fetch_sync, path, ref)

    def _fetch_sync(self, path: str, ref: str) -> str:
        try:
            target = self._resolve(path)
            if ref:
                rel = target.relative_to(self.root).as_posix()
                return _run_git(["show", f"{ref}:{rel}"], cwd=self.root).stdout
            return target.read_text(encoding="utf-8")
        except (GitCommandError, OSError, ValueError) as exc:
            raise SourceFetchError(f"Cannot read {path}@{ref or 'working tree'}: {exc}") from exc

    async def publish_fix(self, path: str, content: str, message: str) -> str:
        return await asyncio.to_thread(self._publish_sync, path, content, message)

    def _publish_sync(self, path: str, content: str, message: str) -> str:
        try:
            target = self._resolve(path)
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
            if not self.commit:
                logger.info("Wrote fix to %s (not committed)", path)
                return WORKING_TREE_REF
            rel = target.relative_to(self.root).as_posix()
            _run_git(["add", "--", rel], cwd=self.root)
            _run_git(["commit", "-m", message, "--", rel], cwd=self.root)
            sha = _run_git(["rev-parse", "--short", "HEAD"], cwd=self.root).stdout.strip()
        except (GitCommandError, OSError, ValueError) as exc:
            raise PublishError(f"Could not publish fix to {path}: {exc}") from exc
        logger.info("Committed %s: %s", sha, message.splitlines()[0])
        return sha

    def __repr__(self) -> str:
        return f"<LocalRepository {self.root} commit={self.commit}>"
