"""Tests for the process runners.

The local runner is exercised against real subprocesses (the current
interpreter); the Docker runner is tested with a mocked client.

Run:
    python -m pytest sandbox/test_runners.py -v
"""

from __future__ import annotations

import asyncio
import os
import sys
import time
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from docker.errors import ImageNotFound

_ROOT = Path(__file__).resolve().parent.parent
if str(_ROOT) not in sys.path:
    sys.path.insert(0, str(_ROOT))

from sandbox.runners import DockerProcessRunner, LocalProcessRunner, OutputCapture, build_runner
from shared.errors import SandboxSetupError
from shared.languages import get_profile

PY = get_profile("python")


async def _run_local(tmp_path: Path, cmd: list[str], timeout: float = 10, env=None):
    runner = LocalProcessRunner()
    async with runner.session(str(tmp_path), PY) as session:
        return await session.run(cmd, timeout, env or {})


class TestLocalProcessRunner:

    def test_captures_output_and_exit_code(self, tmp_path):
        result = asyncio.run(_run_local(
            tmp_path,
            ["python", "-c", "import sys; print('hello'); print('oops', file=sys.stderr); sys.exit(3)"],
        ))
        assert result.exit_code == 3
        assert result.stdout.strip() == "hello"
        assert result.stderr.strip() == "oops"
        assert result.timed_out is False

    def test_runs_in_workspace(self, tmp_path):
        (tmp_path / "marker.txt").write_text("here")
        result = asyncio.run(_run_local(
            tmp_path, ["python", "-c", "print(open('marker.txt').read())"],
        ))
        assert result.stdout.strip() == "here"

    def test_relative_pythonpath_resolved_against_workspace(self, tmp_path):
        deps = tmp_path / "deps"
        deps.mkdir()
        (deps / "vendored_mod.py").write_text("VALUE = 42\n")
        result = asyncio.run(_run_local(
            tmp_path,
            ["python", "-c", "import vendored_mod; print(vendored_mod.VALUE)"],
            env={"PYTHONPATH": "deps"},
        ))
        assert result.stdout.strip() == "42"

    def test_timeout_kills_process(self, tmp_path):
        started = time.monotonic()
        result = asyncio.run(_run_local(
            tmp_path, ["python", "-c", "import time; time.sleep(30)"], timeout=0.5,
        ))
        assert result.timed_out is True
        assert result.exit_code is None
        assert time.monotonic() - started < 10

    def test_missing_command(self, tmp_path):
        result = asyncio.run(_run_local(tmp_path, ["definitely-not-a-real-binary-xyz"]))
        assert result.exit_code == 127
        assert "Command not found" in result.stderr

    def test_cancellation_propagates(self, tmp_path):
        async def scenario():
            task = asyncio.create_task(
                _run_local(tmp_path, ["python", "-c", "import time; time.sleep(30)"], timeout=60)
            )
            await asyncio.sleep(0.3)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(scenario())


    def test_large_output_is_capped_while_streaming(self, tmp_path):
        script = "import sys; sys.stdout.write('START' + 'x' * 20_000_000 + 'END'); sys.stdout.flush()"

        async def scenario():
            async with LocalProcessRunner().session(str(tmp_path), PY) as session:
                return await session.run(["python", "-c", script], 60, {}, output_limit=1000)

        result = asyncio.run(scenario())
        assert result.exit_code == 0
        assert result.timed_out is False
        assert len(result.stdout) < 2100
        assert result.stdout.startswith("START")
        assert result.stdout.endswith("END")
        assert "bytes omitted" in result.stdout

    def test_uncapped_by_default(self, tmp_path):
        result = asyncio.run(_run_local(tmp_path, ["python", "-c", "print('y' * 200_000)"]))
        assert result.stdout.strip() == "y" * 200_000


class TestOutputCapture:

    def test_keeps_head_and_tail(self):
        capture = OutputCapture(4)
        for chunk in (b"ab", b"cdef", None, b"ghij", b"kl"):
            capture.feed(chunk)
        assert capture.head == b"abcd"
        assert capture.tail == b"ijkl"
        assert capture.dropped == 4
        assert capture.text() == "abcd\n... [4 bytes omitted]\nijkl"

    def test_short_output_is_untouched(self):
        capture = OutputCapture(10)
        capture.feed(b"hello ")
        capture.feed(b"you")
        assert capture.text() == "hello you"

    def test_split_multibyte_character_is_replaced(self):
        capture = OutputCapture(2)
        capture.feed("é!".encode() + b"-" * 10 + "€".encode())
        text = capture.text()
        assert text.startswith("é")
        assert text.endswith("\ufffd")

def _exec_returns(client: MagicMock, exit_code: int, chunks: list) -> None:
    client.api.exec_create.return_value = {"Id": "exec-1"}
    client.api.exec_start.return_value = iter(chunks)
    client.api.exec_inspect.return_value = {"ExitCode": exit_code}


class TestDockerProcessRunner:

    def _runner(self, client: MagicMock) -> DockerProcessRunner:
        runner = DockerProcessRunner(images={"python": "python:3.11-slim"})
        runner._client = client
        return runner

    def test_session_creates_and_destroys_container(self, tmp_path):
        client = MagicMock()
        container = client.containers.create.return_value
        _exec_returns(client, 0, [(b"ok\n", None)])
        runner = self._runner(client)

        async def scenario():
            async with runner.session(str(tmp_path), PY, network=False) as session:
                return await session.run(["python", "-V"], 5, {"A": "1"})

        result = asyncio.run(scenario())
        assert result.exit_code == 0
        assert result.stdout == "ok\n"
        kwargs = client.containers.create.call_args.kwargs
        assert kwargs["volumes"][os.path.abspath(str(tmp_path))]["bind"] == "/workspace"
        assert kwargs["network_disabled"] is True
        cmd = client.api.exec_create.call_args.args[1]
        assert cmd[:4] == ["timeout", "-k", "2", "5"]
        assert client.api.exec_start.call_args.kwargs == {"stream": True, "demux": True}
        container.remove.assert_called_once_with(force=True)

    def test_timeout_exit_code_maps_to_timed_out(self, tmp_path):
        client = MagicMock()
        _exec_returns(client, 124, [])
        runner = self._runner(client)

        async def scenario():
            async with runner.session(str(tmp_path), PY) as session:
                return await session.run(["python", "-c", "pass"], 1, {})

        result = asyncio.run(scenario())
        assert result.timed_out is True
        assert result.exit_code is None

    def test_streamed_output_is_capped(self, tmp_path):
        client = MagicMock()
        chunks = [(b"a" * 65536, None)] * 300 + [(None, b"boom"), (b"done", None)]
        _exec_returns(client, 1, chunks)
        runner = self._runner(client)

        async def scenario():
            async with runner.session(str(tmp_path), PY) as session:
                return await session.run(["python", "-m", "pytest"], 5, {}, output_limit=1000)

        result = asyncio.run(scenario())
        assert result.exit_code == 1
        assert len(result.stdout) < 2100
        assert result.stdout.endswith("done")
        assert result.stderr == "boom"

    def test_container_removed_when_body_raises(self, tmp_path):
        client = MagicMock()
        container = client.containers.create.return_value
        runner = self._runner(client)

        async def scenario():
            async with runner.session(str(tmp_path), PY):
                raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            asyncio.run(scenario())
        container.remove.assert_called_once_with(force=True)

    def test_missing_image_is_setup_error(self, tmp_path):
        client = MagicMock()
        client.images.get.side_effect = ImageNotFound("nope")
        client.images.pull.side_effect = ImageNotFound("nope")
        runner = self._runner(client)

        async def scenario():
            async with runner.session(str(tmp_path), PY):
                pass

        with pytest.raises(SandboxSetupError):
            asyncio.run(scenario())

    def test_unconfigured_runtime(self, tmp_path):
        runner = self._runner(MagicMock())

        async def scenario():
            async with runner.session(str(tmp_path), get_profile("javascript")):
                pass

        with pytest.raises(SandboxSetupError):
            asyncio.run(scenario())


class TestBuildRunner:

    def test_backends(self):
        assert build_runner("local").name == "local"
        with patch("sandbox.runners.docker.from_env") as from_env:
            runner = build_runner("docker", images={"node": "node:20"})
            assert runner.name == "docker"
            from_env.assert_not_called()  # client is lazy

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            build_runner("vm")
