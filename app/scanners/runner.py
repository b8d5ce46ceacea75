"""Run external scanner binaries as asyncio subprocesses."""

import asyncio
import logging
import os
import shutil
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from app.core.errors import AdapterTimeoutError, ScannerNotInstalledError

logger = logging.getLogger(__name__)

# Grace period between terminate() and kill() when a scanner is stopped early.
TERMINATE_GRACE_SEC = 2.0


@dataclass(frozen=True)
class ProcessOutput:
    stdout: str
    stderr: str
    exit_code: int


class ProcessRunner:
    """
    Spawn one scanner process and collect its output.

    Raises ScannerNotInstalledError when the binary is missing and
    AdapterTimeoutError when it outlives `timeout`. If the awaiting task is
    cancelled the process is terminated (then killed) before CancelledError
    propagates, so no scanner outlives its scan.
    """

    async def run(
        self,
        argv: Sequence[str],
        timeout: float | None = None,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> ProcessOutput:
        if not argv:
            raise ValueError("argv must name a program")
        merged_env = {**os.environ, **env} if env else None
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=merged_env,
            )
        except FileNotFoundError as e:
            raise ScannerNotInstalledError(
                f"{argv[0]} is not installed or not on PATH", cause=e
            ) from e
        except PermissionError as e:
            raise ScannerNotInstalledError(f"{argv[0]} is not executable", cause=e) from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError as e:
            await _stop(proc, argv[0])
            raise AdapterTimeoutError(
                f"{argv[0]} timed out after {timeout:.0f}s", cause=e
            ) from e
        except asyncio.CancelledError:
            await _stop(proc, argv[0])
            raise

        return ProcessOutput(
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            exit_code=proc.returncode if proc.returncode is not None else -1,
        )

    def is_available(self, binary: str) -> bool:
        """True when the binary resolves on PATH (or is an executable path)."""
        return shutil.which(binary) is not None


async def _stop(proc: asyncio.subprocess.Process, name: str) -> None:
    if proc.returncode is not None:
        return
    try:
        proc.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(proc.wait(), timeout=TERMINATE_GRACE_SEC)
        return
    except asyncio.TimeoutError:
        logger.debug("%s ignored terminate; killing", name)
    try:
        proc.kill()
    except ProcessLookupError:
        return
    await proc.wait()
