"""Async subprocess execution with a hard timeout (ffmpeg/ffprobe)."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Sequence

__all__ = ["ProcessResult", "ProcessFailedError", "ProcessRunner", "run_process"]

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ProcessResult:
    stdout: str
    stderr: str


class ProcessFailedError(Exception):
    """Non-zero exit or timeout; keeps the captured output for diagnostics."""

    def __init__(
        self,
        command: str,
        *,
        code: int | None,
        stdout: str = "",
        stderr: str = "",
        timed_out: bool = False,
        timeout_ms: int | None = None,
    ) -> None:
        if timed_out:
            message = f"{command} exceeded timeout of {timeout_ms}ms"
        else:
            message = f"{command} exited with code {code}"
        super().__init__(message)
        self.command = command
        self.code = code
        self.stdout = stdout
        self.stderr = stderr
        self.timed_out = timed_out


ProcessRunner = Callable[[str, Sequence[str], int], Awaitable[ProcessResult]]


async def run_process(command: str, args: Sequence[str], timeout_ms: int) -> ProcessResult:
    """Run ``command`` with ``args`` and return its decoded output.

    The child is killed once ``timeout_ms`` elapses. A missing binary raises
    ``FileNotFoundError`` unchanged.
    """

    proc = await asyncio.create_subprocess_exec(
        command,
        *args,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout_ms / 1000)
    except TimeoutError:
        proc.kill()
        stdout, stderr = await proc.communicate()
        LOGGER.warning("%s killed after %sms", command, timeout_ms)
        raise ProcessFailedError(
            command,
            code=proc.returncode,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
            timed_out=True,
            timeout_ms=timeout_ms,
        ) from None

    result = ProcessResult(stdout=stdout.decode(errors="replace"), stderr=stderr.decode(errors="replace"))
    if proc.returncode != 0:
        raise ProcessFailedError(command, code=proc.returncode, stdout=result.stdout, stderr=result.stderr)
    return result
