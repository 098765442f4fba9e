"""Child process execution with streaming, timeout and cancellation."""
from __future__ import annotations

import asyncio
import codecs
import contextlib
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from tandem_core.logging import get_logger
from tandem_core.types import OutputSink

logger = get_logger("providers.process")

TIMEOUT_EXIT_CODE = -1
_READ_CHUNK = 4096


@dataclass(frozen=True, slots=True)
class ProcessOutput:
    """Buffered output of a finished child process."""
    exit_code: int
    stdout: str
    stderr: str
    duration_ms: float
    timed_out: bool = False


async def run_process(
    command: str,
    args: Sequence[str],
    *,
    env: Mapping[str, str] | None = None,
    cwd: str | None = None,
    timeout: float | None = None,
    on_stdout: OutputSink | None = None,
    on_stderr: OutputSink | None = None,
) -> ProcessOutput:
    """Run ``command args...`` and collect its output.

    Each chunk is decoded incrementally, handed to the matching sink in
    delivery order and buffered. On timeout the child is killed and reaped
    and the result carries exit code ``-1``. If the awaiting task is
    cancelled the child is killed and reaped before the cancellation
    propagates. The child sees exactly ``env``; it inherits the parent
    environment only when ``env`` is ``None``.

    Raises:
        FileNotFoundError: When ``command`` cannot be executed.
    """
    t0 = time.monotonic()
    proc = await asyncio.create_subprocess_exec(
        command, *args,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=cwd,
        env=dict(env) if env is not None else None,
    )
    logger.debug("Started %s (pid=%s)", command, proc.pid)

    stdout_parts: list[str] = []
    stderr_parts: list[str] = []

    async def _communicate() -> int:
        await asyncio.gather(
            _pump(proc.stdout, stdout_parts, on_stdout),
            _pump(proc.stderr, stderr_parts, on_stderr),
        )
        return await proc.wait()

    try:
        exit_code = await asyncio.wait_for(_communicate(), timeout=timeout)
    except TimeoutError:
        await _kill(proc)
        duration_ms = (time.monotonic() - t0) * 1000
        logger.warning("%s timed out after %.1fs", command, timeout)
        stderr = "".join(stderr_parts)
        note = f"Process timed out after {timeout:g}s"
        return ProcessOutput(
            exit_code=TIMEOUT_EXIT_CODE,
            stdout="".join(stdout_parts),
            stderr=f"{stderr}\n{note}" if stderr else note,
            duration_ms=duration_ms,
            timed_out=True,
        )
    except asyncio.CancelledError:
        logger.info("Cancelling %s (pid=%s)", command, proc.pid)
        await asyncio.shield(_kill(proc))
        raise

    return ProcessOutput(
        exit_code=exit_code,
        stdout="".join(stdout_parts),
        stderr="".join(stderr_parts),
        duration_ms=(time.monotonic() - t0) * 1000,
    )


async def _pump(
    stream: asyncio.StreamReader | None,
    parts: list[str],
    sink: OutputSink | None,
) -> None:
    if stream is None:
        return
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        chunk = await stream.read(_READ_CHUNK)
        text = decoder.decode(chunk, final=not chunk)
        if text:
            parts.append(text)
            if sink is not None:
                sink(text)
        if not chunk:
            return


async def _kill(proc: asyncio.subprocess.Process) -> None:
    """Kill the child and reap it to avoid zombies."""
    if proc.returncode is None:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
    with contextlib.suppress(ProcessLookupError):
        await proc.wait()
