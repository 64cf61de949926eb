"""Asynchronous runner for the external network tools."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Sequence


logger = logging.getLogger(__name__)


class CommandError(RuntimeError):
    """Raised when an external command cannot be completed."""

    def __init__(self, message: str, *, stdout: str = "", stderr: str = "") -> None:
        super().__init__(message)
        self.stdout = stdout
        self.stderr = stderr


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Captured output of a finished command."""

    returncode: int
    stdout: str
    stderr: str


async def run_command(
    args: Sequence[str],
    *,
    timeout: float | None = 30.0,
    check: bool = True,
) -> CommandResult:
    """Run ``args`` without blocking the event loop.

    A missing executable, a timeout or (with ``check``) a non-zero exit status
    raise :class:`CommandError`. The error carries whatever output was
    captured so callers can inspect the tool's message.
    """

    argv = list(args)
    logger.debug("Running %s", " ".join(argv))
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise CommandError(f"{argv[0]} command unavailable") from exc
    try:
        raw_out, raw_err = await asyncio.wait_for(process.communicate(), timeout)
    except asyncio.TimeoutError as exc:
        process.kill()
        await process.wait()
        raise CommandError(f"{argv[0]} command timed out") from exc
    stdout = raw_out.decode("utf-8", errors="replace")
    stderr = raw_err.decode("utf-8", errors="replace")
    returncode = process.returncode if process.returncode is not None else -1
    if check and returncode != 0:
        message = stderr.strip() or stdout.strip() or f"{argv[0]} exited with {returncode}"
        raise CommandError(message, stdout=stdout, stderr=stderr)
    return CommandResult(returncode, stdout, stderr)


__all__ = ["CommandError", "CommandResult", "run_command"]
