"""Run the applicable scanner adapters for one scan concurrently and merge their results."""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Literal

from app.core.errors import AdapterTimeoutError, QuorumFailure
from app.scanners.base import elapsed_ms, failed_result
from app.scanners.registry import ScannerRegistry, scanner_order
from app.schemas.scan import ScannerRun
from app.schemas.vulnerability import (
    SCANNER_TYPE,
    NormalizedVulnerability,
    ScanMode,
    ScannerName,
    ScanResult,
)

if TYPE_CHECKING:
    from app.core.config import Settings

logger = logging.getLogger(__name__)

ProgressEvent = Literal["started", "finished"]
# (event, scanner, adapters finished so far, adapters to run)
ProgressCallback = Callable[[ProgressEvent, str, int, int], Awaitable[None]]


@dataclass
class DispatchOutcome:
    """Merged output of one dispatch: results in scanner order plus the per-scanner breakdown."""

    results: list[ScanResult] = field(default_factory=list)
    runs: list[ScannerRun] = field(default_factory=list)

    @property
    def vulnerabilities(self) -> list[NormalizedVulnerability]:
        return [v for r in self.results for v in r.vulnerabilities]

    @property
    def fatal_scanners(self) -> list[str]:
        return [r.scanner for r in self.results if r.is_fatal]


def scanner_run(result: ScanResult) -> ScannerRun:
    return ScannerRun(
        scanner=result.scanner,
        type=SCANNER_TYPE[result.scanner],
        status="failed" if result.is_fatal else "completed",
        findings_count=len(result.vulnerabilities),
        duration_ms=max(int(result.metadata.get("duration_ms") or 0), 0),
        errors=[e.model_dump() for e in result.errors],
        metadata={k: v for k, v in result.metadata.items() if k != "duration_ms"},
    )


def skipped_run(scanner: ScannerName) -> ScannerRun:
    return ScannerRun(
        scanner=scanner,
        type=SCANNER_TYPE[scanner],
        status="skipped",
        metadata={"reason": "not applicable to target"},
    )


def check_quorum(policy: str, results: list[ScanResult]) -> None:
    """
    Raise QuorumFailure when too many adapters were fatal.

    any: fail only when every adapter that ran is fatal.
    majority: more than half of the adapters that ran must succeed.
    Nothing ran (all skipped) is not a failure.
    """
    if not results:
        return
    fatal = [r.scanner for r in results if r.is_fatal]
    succeeded = len(results) - len(fatal)
    if policy == "majority":
        failed = succeeded * 2 <= len(results)
    else:
        failed = succeeded == 0
    if failed:
        raise QuorumFailure(
            f"Quorum not met ({policy}): {len(fatal)} of {len(results)} scanners failed "
            f"({', '.join(sorted(fatal, key=scanner_order))})"
        )


class Dispatcher:
    """
    Fan-out/fan-in over scanner adapters.

    Concurrency across all scans in the process is bounded by one shared
    semaphore; each adapter gets its own timeout. An adapter that raises or
    times out becomes a fatal ScanResult; the dispatcher itself never raises
    for adapter failures.
    """

    def __init__(
        self,
        registry: ScannerRegistry,
        settings: "Settings",
        semaphore: asyncio.Semaphore | None = None,
    ) -> None:
        self._registry = registry
        self._settings = settings
        self._semaphore = semaphore or asyncio.Semaphore(settings.SCANNER_CONCURRENCY)

    def select(self, mode: ScanMode, requested: Iterable[str] | None = None) -> list[ScannerName]:
        return self._registry.select(mode, requested)

    def timeout_for(self, mode: ScanMode) -> float:
        if mode == "quick":
            return self._settings.QUICK_SCANNER_TIMEOUT_SEC
        return self._settings.SCANNER_TIMEOUT_SEC

    async def plan(
        self, target: str, mode: ScanMode, requested: Iterable[str] | None = None
    ) -> tuple[list[ScannerName], list[ScannerName]]:
        """Split the selected scanners into (to run, skipped as not applicable)."""
        to_run: list[ScannerName] = []
        skipped: list[ScannerName] = []
        for name in self._registry.select(mode, requested):
            adapter = self._registry.get(name)
            if await asyncio.to_thread(adapter.applies_to, target):
                to_run.append(name)
            else:
                skipped.append(name)
        return to_run, skipped

    async def _run_one(
        self,
        name: ScannerName,
        target: str,
        scan_id: str,
        mode: ScanMode,
        timeout: float,
    ) -> ScanResult:
        adapter = self._registry.get(name)
        start = time.perf_counter()
        try:
            return await asyncio.wait_for(adapter.scan(target, scan_id, mode), timeout=timeout)
        except asyncio.TimeoutError:
            error = AdapterTimeoutError(f"{name} timed out after {timeout:.0f}s")
            logger.error("Scanner %s timed out for scan %s", name, scan_id)
            return failed_result(name, error.message, elapsed_ms(start))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Scanner %s raised for scan %s: %s", name, scan_id, e, exc_info=True)
            return failed_result(name, f"{name} crashed: {e}", elapsed_ms(start))

    async def dispatch(
        self,
        target: str,
        scan_id: str,
        mode: ScanMode,
        requested: Iterable[str] | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> DispatchOutcome:
        to_run, skipped = await self.plan(target, mode, requested)
        timeout = self.timeout_for(mode)
        total = len(to_run)
        finished = 0

        async def run_scanner(name: ScannerName) -> ScanResult:
            nonlocal finished
            async with self._semaphore:
                if on_progress:
                    await on_progress("started", name, finished, total)
                result = await self._run_one(name, target, scan_id, mode, timeout)
            finished += 1
            if on_progress:
                await on_progress("finished", name, finished, total)
            return result

        results = await asyncio.gather(*(run_scanner(name) for name in to_run))

        outcome = DispatchOutcome()
        # canonical scanner order keeps the merge independent of completion order
        for result in sorted(results, key=lambda r: scanner_order(r.scanner)):
            outcome.results.append(result)
        runs = [scanner_run(r) for r in outcome.results] + [skipped_run(s) for s in skipped]
        outcome.runs = sorted(runs, key=lambda r: scanner_order(r.scanner))
        logger.info(
            "Dispatch finished",
            extra={
                "scan_id": scan_id,
                "scanners_run": total,
                "scanners_skipped": len(skipped),
                "fatal": outcome.fatal_scanners,
            },
        )
        return outcome
