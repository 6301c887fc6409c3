from __future__ import annotations

import asyncio
import contextlib
import os
import platform
import signal
from collections import deque
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from loguru import logger

from agent_bridge.errors import ProcessFailure, SessionClosedError, StartFailure

_IS_WINDOWS = platform.system() == "Windows"

DEFAULT_MAX_LINE_BYTES = 1024 * 1024
_STDERR_TAIL_LINES = 200


@dataclass(frozen=True)
class ProcessSpec:
    command: str
    args: tuple[str, ...] = ()
    env: dict[str, str] = field(default_factory=dict)
    working_directory: str | None = None

    def merged_env(self) -> dict[str, str]:
        # Parent environment first, per-session overrides on top.
        merged = dict(os.environ)
        merged.update(self.env)
        return merged


@runtime_checkable
class ConfigProvider(Protocol):
    def process_spec(self) -> ProcessSpec: ...


class ProcessHandle:
    """Owns the child process and its pipes; knows nothing about frames."""

    def __init__(self, proc: asyncio.subprocess.Process, spec: ProcessSpec):
        self._proc = proc
        self._spec = spec
        self._write_lock = asyncio.Lock()
        self._stderr_tail: deque[str] = deque(maxlen=_STDERR_TAIL_LINES)
        self._stderr_task = asyncio.create_task(self._drain_stderr())
        self._closed = False

    @classmethod
    async def start(cls, spec: ProcessSpec, *, max_line_bytes: int = DEFAULT_MAX_LINE_BYTES) -> ProcessHandle:
        if not spec.command:
            raise StartFailure("no command configured")
        if spec.working_directory and not os.path.isdir(spec.working_directory):
            raise StartFailure(f"working directory does not exist: {spec.working_directory}")

        try:
            proc = await asyncio.create_subprocess_exec(
                spec.command,
                *spec.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=spec.working_directory,
                env=spec.merged_env(),
                limit=max_line_bytes,
                start_new_session=not _IS_WINDOWS,
            )
        except OSError as ex:
            raise StartFailure(f"failed to start {spec.command}", ex) from ex

        logger.info(f"Started child process pid={proc.pid}: {spec.command} {' '.join(spec.args)}".rstrip())
        return cls(proc, spec)

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode

    @property
    def stdout(self) -> asyncio.StreamReader:
        assert self._proc.stdout is not None
        return self._proc.stdout

    @property
    def stderr_text(self) -> str:
        return "\n".join(self._stderr_tail)

    async def write(self, data: bytes) -> None:
        """Write one frame; writers are serialized so frames never interleave."""
        async with self._write_lock:
            if self._closed:
                raise SessionClosedError("process input is closed")
            stdin = self._proc.stdin
            assert stdin is not None
            stdin.write(data)
            await stdin.drain()

    async def wait(self) -> int:
        return await self._proc.wait()

    async def close(self, timeout: float = 5.0) -> None:
        """Close stdin, wait for exit, kill the process group after ``timeout``.

        Later calls are no-ops. Raises ProcessFailure if the child exited
        non-zero on its own.
        """
        if self._closed:
            return
        self._closed = True
        stdin = self._proc.stdin
        if stdin is not None and not stdin.is_closing():
            # EOF on stdin asks the child to finish.
            stdin.close()
            with contextlib.suppress(BrokenPipeError, ConnectionResetError, OSError):
                await stdin.wait_closed()

        killed = False
        try:
            await asyncio.wait_for(self._proc.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Child process pid={self._proc.pid} did not exit within {timeout}s; killing")
            self._kill()
            killed = True
            await self._proc.wait()

        await asyncio.wait({self._stderr_task}, timeout=1.0)
        if not self._stderr_task.done():
            self._stderr_task.cancel()

        code = self._proc.returncode
        logger.debug(f"Child process pid={self._proc.pid} exited with code {code}")
        if not killed and code is not None and code > 0:
            raise ProcessFailure(code, self.stderr_text)

    def _kill(self) -> None:
        with contextlib.suppress(ProcessLookupError):
            if _IS_WINDOWS:
                self._proc.kill()
            else:
                # The child may have spawned helpers that hold the pipes open.
                os.killpg(self._proc.pid, signal.SIGKILL)

    async def _drain_stderr(self) -> None:
        stream = self._proc.stderr
        if stream is None:
            return
        while True:
            try:
                line = await stream.readline()
            except ValueError:
                continue
            if not line:
                return
            text = line.decode(errors="replace").rstrip()
            self._stderr_tail.append(text)
            logger.bind(child_stderr=True, child_pid=self._proc.pid).debug(f"[child stderr] {text}")
