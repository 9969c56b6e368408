"""Process runners — where sandbox commands actually execute.

A runner opens a *session* for one sandbox workspace.  Every command
inside the session runs under a hard wall-clock timeout; on timeout or
cancellation the whole process tree is killed.  Closing the session
releases everything the runner allocated (for Docker, the container).

Two backends:

* :class:`LocalProcessRunner` — asyncio subprocesses on the host, each
  in its own session so the process group can be killed as a unit.
* :class:`DockerProcessRunner` — one ephemeral container per sandbox,
  workspace bind-mounted at ``/workspace``, memory / CPU limits, network
  detached after provisioning.  Requires a running Docker daemon.

Output is captured through :class:`OutputCapture`, so a chatty test run
costs bounded memory however much it prints.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
import time
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from docker.models.containers import Container

from shared.errors import SandboxSetupError
from shared.languages import LanguageProfile

logger = logging.getLogger(__name__)

# GNU timeout exit code when the time limit fired
_TIMEOUT_EXIT = 124
_READ_CHUNK = 65536


@dataclass
class ProcessResult:
    exit_code: int | None
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    duration_ms: int = 0


class OutputCapture:
    """Bounded capture of one output stream.

    Keeps the first *limit* bytes and the last *limit* bytes; everything
    in between is counted and dropped.  Result summaries are printed at
    the end of a run, so the tail is worth as much as the head.
    ``limit=None`` keeps everything.
    """

    def __init__(self, limit: int | None = None):
        self.limit = limit
        self.head = bytearray()
        self.tail = bytearray()
        self.dropped = 0

    def feed(self, chunk: bytes | None) -> None:
        if not chunk:
            return
        if self.limit is None:
            self.head += chunk
            return
        room = self.limit - len(self.head)
        if room > 0:
            self.head += chunk[:room]
            chunk = chunk[room:]
        if not chunk:
            return
        self.tail += chunk
        excess = len(self.tail) - self.limit
        if excess > 0:
            del self.tail[:excess]
            self.dropped += excess

    def text(self) -> str:
        data = bytes(self.head)
        if self.dropped:
            data += f"\n... [{self.dropped} bytes omitted]\n".encode()
        return (data + bytes(self.tail)).decode("utf-8", errors="replace")


class RunnerSession(ABC):
    """Command execution bound to one workspace."""

    @abstractmethod
    async def run(
        self,
        cmd: list[str],
        timeout: float,
        env: dict[str, str],
        output_limit: int | None = None,
    ) -> ProcessResult:
        """Run *cmd*.  *output_limit* bounds each stream, see :class:`OutputCapture`."""

    async def isolate(self) -> None:
        """Cut network access once provisioning is done (no-op by default)."""


class ProcessRunner(ABC):
    name: str = "base"

    @abstractmethod
    def session(
        self,
        workspace: str,
        profile: LanguageProfile,
        network: bool = True,
    ):
        """Async context manager yielding a :class:`RunnerSession`."""

    def __repr__(self) -> str:
        return f"<ProcessRunner: {self.name}>"


# ── Local subprocesses ───────────────────────────────────────────────

class LocalSession(RunnerSession):

    def __init__(self, workspace: str):
        self.workspace = workspace

    async def run(
        self,
        cmd: list[str],
        timeout: float,
        env: dict[str, str],
        output_limit: int | None = None,
    ) -> ProcessResult:
        argv = list(cmd)
        if argv and argv[0] == "python":
            argv[0] = sys.executable

        merged_env = os.environ.copy()
        for key, value in env.items():
            # Relative search paths are resolved against the workspace
            if key == "PYTHONPATH":
                value = os.pathsep.join(
                    os.path.join(self.workspace, part) for part in value.split(os.pathsep) if part
                )
            merged_env[key] = value

        started = time.monotonic()
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=self.workspace,
                env=merged_env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except FileNotFoundError:
            return ProcessResult(exit_code=127, stderr=f"Command not found: {argv[0]}")

        stdout_task = asyncio.ensure_future(_drain(proc.stdout, output_limit))
        stderr_task = asyncio.ensure_future(_drain(proc.stderr, output_limit))
        timed_out = False
        try:
            await asyncio.wait_for(proc.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            timed_out = True
            logger.warning("Command timed out after %.1fs: %s", timeout, " ".join(cmd))
            await _kill_group(proc)
        except asyncio.CancelledError:
            await _kill_group(proc)
            stdout_task.cancel()
            stderr_task.cancel()
            raise

        stdout, stderr = await asyncio.gather(stdout_task, stderr_task)
        return ProcessResult(
            exit_code=None if timed_out else proc.returncode,
            stdout=stdout,
            stderr=stderr,
            timed_out=timed_out,
            duration_ms=int((time.monotonic() - started) * 1000),
        )


async def _drain(stream: asyncio.StreamReader | None, limit: int | None) -> str:
    if stream is None:
        return ""
    capture = OutputCapture(limit)
    while True:
        chunk = await stream.read(_READ_CHUNK)
        if not chunk:
            break
        capture.feed(chunk)
    return capture.text()


async def _kill_group(proc: asyncio.subprocess.Process) -> None:
    """SIGKILL the whole process group, then reap."""
    if proc.returncode is None:
        try:
            os.killpg(os.getpgid(proc.pid), signal.SIGKILL)
        except (ProcessLookupError, OSError):
            try:
                proc.kill()
            except ProcessLookupError:
                pass
    await proc.wait()


class LocalProcessRunner(ProcessRunner):
    """Runs commands directly on the host.  Relies on the host toolchain."""

    name = "local"

    @asynccontextmanager
    async def session(
        self,
        workspace: str,
        profile: LanguageProfile,
        network: bool = True,
    ) -> AsyncIterator[LocalSession]:
        yield LocalSession(workspace)


# ── Docker containers ────────────────────────────────────────────────

class DockerSession(RunnerSession):

    def __init__(self, runner: DockerProcessRunner, container: Container):
        self.runner = runner
        self.container = container

    async def run(
        self,
        cmd: list[str],
        timeout: float,
        env: dict[str, str],
        output_limit: int | None = None,
    ) -> ProcessResult:
        # coreutils timeout inside the container; the outer wait is a backstop
        wrapped = ["timeout", "-k", "2", str(max(1, int(timeout))), *cmd]
        environment = {"HOME": "/tmp", "PIP_NO_CACHE_DIR": "1", **env}
        started = time.monotonic()
        try:
            exit_code, stdout, stderr = await asyncio.wait_for(
                asyncio.to_thread(self._exec_sync, wrapped, environment, output_limit),
                timeout=timeout + 10,
            )
        except asyncio.TimeoutError:
            logger.warning("Container %s unresponsive — killing", self.container.short_id)
            await asyncio.to_thread(self.runner.kill, self.container)
            return ProcessResult(
                exit_code=None,
                stderr=f"Command timed out after {timeout}s",
                timed_out=True,
                duration_ms=int((time.monotonic() - started) * 1000),
            )
        except asyncio.CancelledError:
            await asyncio.to_thread(self.runner.kill, self.container)
            raise
        except (APIError, DockerException) as exc:
            raise SandboxSetupError(f"Docker exec failed: {exc}") from exc

        timed_out = exit_code == _TIMEOUT_EXIT
        return ProcessResult(
            exit_code=None if timed_out else exit_code,
            stdout=stdout,
            stderr=stderr,
            timed_out=timed_out,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    def _exec_sync(
        self,
        cmd: list[str],
        environment: dict[str, str],
        output_limit: int | None = None,
    ) -> tuple[int | None, str, str]:
        # Low-level API: a streamed exec_run() does not report the exit code
        api = self.runner.client.api
        exec_id = api.exec_create(
            self.container.id,
            cmd,
            workdir="/workspace",
            environment=environment,
        )["Id"]
        stdout = OutputCapture(output_limit)
        stderr = OutputCapture(output_limit)
        for out, err in api.exec_start(exec_id, stream=True, demux=True):
            stdout.feed(out)
            stderr.feed(err)
        exit_code = api.exec_inspect(exec_id).get("ExitCode")
        return exit_code, stdout.text(), stderr.text()

    async def isolate(self) -> None:
        await asyncio.to_thread(self.runner.disconnect_network, self.container)


class DockerProcessRunner(ProcessRunner):
    """Creates one ephemeral container per sandbox.

    Usage::

        runner = DockerProcessRunner(images={"python": "python:3.11-slim"})
        async with runner.session("/tmp/selfheal-abc", profile) as session:
            result = await session.run(["python", "-m", "pytest"], 25, {})
    """

    name = "docker"

    def __init__(
        self,
        images: dict[str, str] | None = None,
        memory_limit: str = "512m",
        cpu_limit: float = 1.0,
        network_disabled: bool = True,
    ):
        self.images = images or {"python": "python:3.11-slim", "node": "node:20-slim"}
        self.memory_limit = memory_limit
        self.cpu_limit = cpu_limit
        self.network_disabled = network_disabled
        self._client: docker.DockerClient | None = None

    # -- Docker client (lazy) ------------------------------------------

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    @asynccontextmanager
    async def session(
        self,
        workspace: str,
        profile: LanguageProfile,
        network: bool = True,
    ) -> AsyncIterator[DockerSession]:
        image = self.images.get(profile.runtime)
        if not image:
            raise SandboxSetupError(f"No sandbox image configured for runtime '{profile.runtime}'")
        container = await asyncio.to_thread(self._create, workspace, image, network)
        try:
            yield DockerSession(self, container)
        finally:
            # ALWAYS destroy the container
            await asyncio.to_thread(self.destroy, container)

    def _create(self, workspace: str, image: str, network: bool) -> Container:
        try:
            self._ensure_image(image)
            options = {}
            if hasattr(os, "getuid"):
                # Files written into the bind mount stay removable by the host user
                options["user"] = f"{os.getuid()}:{os.getgid()}"
            container = self.client.containers.create(
                image=image,
                command="sleep infinity",      # keep alive for exec
                working_dir="/workspace",
                volumes={os.path.abspath(workspace): {"bind": "/workspace", "mode": "rw"}},
                mem_limit=self.memory_limit,
                nano_cpus=int(self.cpu_limit * 1e9),
                network_disabled=self.network_disabled and not network,
                labels={"managed-by": "selfheal-sandbox"},
                detach=True,
                **options,
            )
            container.start()
        except ImageNotFound as exc:
            raise SandboxSetupError(f"Docker image '{image}' not found") from exc
        except APIError as exc:
            raise SandboxSetupError(f"Docker API error: {exc.explanation}") from exc
        except DockerException as exc:
            raise SandboxSetupError(f"Docker unavailable: {exc}") from exc
        logger.info("Container %s started (image=%s)", container.short_id, image)
        return container

    def _ensure_image(self, image: str) -> None:
        """Pull the sandbox image if it isn't available locally."""
        try:
            self.client.images.get(image)
        except ImageNotFound:
            logger.info("Pulling image %s …", image)
            self.client.images.pull(image)

    def disconnect_network(self, container: Container) -> None:
        """Best-effort disconnect from all networks once dependencies are in."""
        if not self.network_disabled:
            return
        try:
            container.reload()
            networks = container.attrs.get("NetworkSettings", {}).get("Networks", {}) or {}
            for net_name in list(networks):
                self.client.networks.get(net_name).disconnect(container)
                logger.debug("Disconnected container from %s", net_name)
        except DockerException as exc:
            logger.debug("Could not disconnect network: %s", exc)

    @staticmethod
    def kill(container: Container) -> None:
        try:
            container.kill()
        except NotFound:
            pass
        except DockerException as exc:
            logger.warning("Failed to kill container %s: %s", container.short_id, exc)

    @staticmethod
    def destroy(container: Container | None) -> None:
        """Force-remove the container.  Never raises."""
        if container is None:
            return
        try:
            container.remove(force=True)
            logger.info("Container %s destroyed", container.short_id)
        except NotFound:
            pass  # already gone
        except DockerException as exc:
            logger.warning("Failed to destroy container: %s", exc)


def build_runner(
    backend: str,
    images: dict[str, str] | None = None,
    memory_limit: str = "512m",
    cpu_limit: float = 1.0,
) -> ProcessRunner:
    if backend == "docker":
        return DockerProcessRunner(images=images, memory_limit=memory_limit, cpu_limit=cpu_limit)
    if backend == "local":
        return LocalProcessRunner()
    raise ValueError(f"Unknown sandbox backend '{backend}'")
