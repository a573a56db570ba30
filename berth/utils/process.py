"""Asynchronous external process runner.

Every interaction with the container runtime goes through here. A non-zero
exit is a normal result; only the caller decides whether it is an error.
"""

from __future__ import annotations

import asyncio
import codecs
import inspect
from dataclasses import dataclass
from typing import Awaitable, Callable, Mapping, Sequence, Union

import structlog

logger = structlog.get_logger()

# Exit code reported when the executable could not be started at all
SPAWN_FAILED = -1
# Exit code reported when the process was killed by a stop request
STOPPED = -2
# Exit code reported when the process exceeded its timeout
TIMED_OUT = 124

_CHUNK_SIZE = 4096

OutputHandler = Callable[[str], Union[None, Awaitable[None]]]


@dataclass
class ProcessResult:
    """Outcome of a finished process."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class ProcessHandle:
    """Handle to a running child, used to forcibly terminate it."""

    def __init__(self, process: asyncio.subprocess.Process) -> None:
        self._process = process
        self.killed = False

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def running(self) -> bool:
        return self._process.returncode is None

    def kill(self) -> None:
        if self._process.returncode is not None:
            return
        self.killed = True
        try:
            self._process.kill()
        except ProcessLookupError:
            pass


async def deliver(handler: OutputHandler | None, text: str) -> None:
    if handler is None:
        return
    result = handler(text)
    if inspect.isawaitable(result):
        await result


async def _pump(
    stream: asyncio.StreamReader,
    sink: list[str],
    handler: OutputHandler | None,
) -> None:
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        data = await stream.read(_CHUNK_SIZE)
        text = decoder.decode(data, final=not data)
        if text:
            sink.append(text)
            await deliver(handler, text)
        if not data:
            return


async def stream_process(
    cmd: str,
    args: Sequence[str] = (),
    *,
    cwd: str | None = None,
    env: Mapping[str, str] | None = None,
    stdin: str | bytes | None = None,
    timeout: float | None = None,
    on_stdout: OutputHandler | None = None,
    on_stderr: OutputHandler | None = None,
    on_process: Callable[[ProcessHandle], None] | None = None,
) -> ProcessResult:
    """Run a process, delivering output chunks to handlers as they arrive.

    Args:
        cmd: Executable to run
        args: Arguments
        cwd: Working directory of the child
        env: Full environment for the child (None inherits ours)
        stdin: Data written to the child's stdin, which is then closed
        timeout: Seconds before the child is killed
        on_stdout: Called with each decoded stdout chunk (sync or async)
        on_stderr: Called with each decoded stderr chunk (sync or async)
        on_process: Called once with a handle that can kill the child

    Returns:
        The accumulated result. Spawn failures yield ``SPAWN_FAILED`` with
        the error text in stderr instead of raising.
    """
    try:
        process = await asyncio.create_subprocess_exec(
            cmd,
            *args,
            stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=dict(env) if env is not None else None,
        )
    except OSError as exc:
        logger.warning("process.spawn_failed", cmd=cmd, error=str(exc))
        return ProcessResult(exit_code=SPAWN_FAILED, stderr=str(exc))

    handle = ProcessHandle(process)
    if on_process is not None:
        on_process(handle)

    stdout_chunks: list[str] = []
    stderr_chunks: list[str] = []

    async def feed() -> None:
        if stdin is None or process.stdin is None:
            return
        data = stdin.encode() if isinstance(stdin, str) else stdin
        try:
            process.stdin.write(data)
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            # Child exited before reading all of its input
            logger.debug("process.stdin_closed_early", cmd=cmd)
        finally:
            process.stdin.close()

    async def communicate() -> int:
        await asyncio.gather(
            feed(),
            _pump(process.stdout, stdout_chunks, on_stdout),
            _pump(process.stderr, stderr_chunks, on_stderr),
        )
        return await process.wait()

    timed_out = False
    try:
        if timeout:
            exit_code = await asyncio.wait_for(communicate(), timeout)
        else:
            exit_code = await communicate()
    except asyncio.TimeoutError:
        timed_out = True
        handle.kill()
        exit_code = await process.wait()

    stderr_text = "".join(stderr_chunks)
    if timed_out:
        logger.warning("process.timeout", cmd=cmd, timeout=timeout)
        exit_code = TIMED_OUT
        stderr_text += f"\nProcess timed out after {timeout}s"
    elif handle.killed:
        exit_code = STOPPED

    return ProcessResult(
        exit_code=exit_code,
        stdout="".join(stdout_chunks),
        stderr=stderr_text,
    )


async def run_process(
    cmd: str,
    args: Sequence[str] = (),
    *,
    cwd: str | None = None,
    env: Mapping[str, str] | None = None,
    stdin: str | bytes | None = None,
    timeout: float | None = None,
) -> ProcessResult:
    """Run a process to completion and collect its output."""
    return await stream_process(
        cmd,
        args,
        cwd=cwd,
        env=env,
        stdin=stdin,
        timeout=timeout,
    )
