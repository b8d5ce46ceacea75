"""Scan lifecycle manager: the single writer of scan status.

    pending -> running -> normalizing -> [ai_enriching] -> completed
    failed / cancelled reachable from any non-terminal state

Every status change goes through a compare-and-set update while holding the
scan's asyncio.Lock, and writes status, progress and stage together. Results
that arrive after a scan became terminal are dropped (CancellationRace).
"""

import asyncio
import logging
import uuid
from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING, Any, TypeVar

from app.core.errors import (
    CancellationRace,
    InvalidTransitionError,
    ScanNotFoundError,
    ScanPipelineError,
)
from app.repositories.scans import ScanRepository
from app.schemas.scan import Scan, ScannerRun
from app.schemas.vulnerability import NormalizedVulnerability, ScanMode, utcnow
from app.services.dispatcher import Dispatcher, ProgressEvent, check_quorum
from app.services.normalize import NormalizationEngine

if TYPE_CHECKING:
    from app.core.config import Settings
    from app.services.enrichment import OllamaEnricher

logger = logging.getLogger(__name__)

T = TypeVar("T")

STAGE_LABELS: dict[str, str] = {
    "pending": "Queued",
    "running": "Running scanners",
    "normalizing": "Correlating findings",
    "ai_enriching": "Enriching findings",
    "completed": "Scan complete",
    "failed": "Scan failed",
    "cancelled": "Scan cancelled",
}

# Progress on entering each status; running climbs from 0 towards RUNNING_PROGRESS_MAX.
STAGE_PROGRESS: dict[str, int] = {
    "pending": 0,
    "running": 0,
    "normalizing": 70,
    "ai_enriching": 85,
    "completed": 100,
}
RUNNING_PROGRESS_MAX = 60

TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"running", "failed", "cancelled"}),
    "running": frozenset({"normalizing", "failed", "cancelled"}),
    "normalizing": frozenset({"ai_enriching", "completed", "failed", "cancelled"}),
    "ai_enriching": frozenset({"completed", "failed", "cancelled"}),
}
NON_TERMINAL = tuple(TRANSITIONS)


def running_progress(finished: int, total: int) -> int:
    if total <= 0:
        return RUNNING_PROGRESS_MAX
    return (RUNNING_PROGRESS_MAX * min(finished, total)) // total


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def run_error_entries(run: ScannerRun) -> list[tuple[str, str]]:
    """(level, message) for every error an adapter reported, fatal or not."""
    entries = []
    for error in run.errors:
        severity = error.get("severity") or "error"
        message = error.get("message") or "unknown error"
        if error.get("file"):
            message = f"{message} ({error['file']})"
        if severity == "fatal":
            entries.append(("error", f"{run.scanner} failed: {message}"))
        elif severity == "warning":
            entries.append(("warning", f"{run.scanner} warning: {message}"))
        else:
            entries.append(("error", f"{run.scanner} error: {message}"))
    return entries


class ScanLifecycleManager:
    """
    Owns every scan started in this process: schedules its pipeline as a
    background task and is the only code that changes its status.

    Repository calls run in worker threads so a slow database never stalls
    other scans; the per-scan lock keeps each scan's writes serialized.
    """

    def __init__(
        self,
        repository: ScanRepository,
        dispatcher: Dispatcher,
        engine: NormalizationEngine,
        settings: "Settings",
        enricher: "OllamaEnricher | None" = None,
    ) -> None:
        self._repository = repository
        self._dispatcher = dispatcher
        self._engine = engine
        self._settings = settings
        self._enricher = enricher
        self._locks: dict[str, asyncio.Lock] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}

    def _lock(self, scan_id: str) -> asyncio.Lock:
        return self._locks.setdefault(scan_id, asyncio.Lock())

    def _release(self, scan_id: str) -> None:
        """Forget the scan's lock once no pipeline of this process owns the scan."""
        if scan_id in self._tasks:
            return
        lock = self._locks.get(scan_id)
        if lock is not None and not lock.locked():
            self._locks.pop(scan_id, None)

    def _forget(self, scan_id: str, task: "asyncio.Task[None]") -> None:
        if self._tasks.get(scan_id) is task:
            self._tasks.pop(scan_id, None)
        self._release(scan_id)

    async def _db(self, call: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return await asyncio.to_thread(call, *args, **kwargs)

    async def _log(self, scan_id: str, level: str, message: str, **details: Any) -> None:
        logger.log(
            getattr(logging, level.upper()),
            "[scan %s] %s",
            scan_id,
            message,
            extra={"scan_id": scan_id, **details},
        )
        await self._db(self._repository.append_log, scan_id, level, message, details)

    async def _get_existing(self, scan_id: str) -> Scan:
        scan = await self._db(self._repository.get_scan, scan_id)
        if scan is None:
            raise ScanNotFoundError(f"Scan {scan_id} not found")
        return scan

    # -- inbound operations -------------------------------------------------

    async def start_scan(
        self, target: str, mode: ScanMode = "full", scanners: Iterable[str] | None = None
    ) -> str:
        """Create a pending scan, schedule its pipeline and return its id immediately."""
        scan_id = str(uuid.uuid4())
        requested = list(scanners) if scanners is not None else None
        selected = self._dispatcher.select(mode, requested)
        await self._db(
            self._repository.create_scan,
            scan_id,
            target,
            mode,
            selected,
            status="pending",
            stage=STAGE_LABELS["pending"],
        )
        await self._log(scan_id, "info", "Scan queued", mode=mode, scanners=selected)
        task = asyncio.create_task(self._execute(scan_id, target, mode, requested), name=f"scan-{scan_id}")
        self._tasks[scan_id] = task
        # runs even when the task is cancelled before its first step
        task.add_done_callback(lambda t: self._forget(scan_id, t))
        return scan_id

    async def cancel_scan(self, scan_id: str) -> Scan:
        """
        Move the scan to cancelled now, then stop its pipeline cooperatively.

        Raises ScanNotFoundError for an unknown scan and InvalidTransitionError
        when the scan is already terminal.
        """
        scan = await self._get_existing(scan_id)
        if scan.is_terminal:
            raise InvalidTransitionError(f"Scan {scan_id} is already {scan.status}")

        try:
            async with self._lock(scan_id):
                scan = await self._get_existing(scan_id)
                if scan.is_terminal:
                    raise InvalidTransitionError(f"Scan {scan_id} is already {scan.status}")
                updated = await self._db(
                    self._repository.update_scan,
                    scan_id,
                    expected_status=scan.status,
                    status="cancelled",
                    progress_stage=STAGE_LABELS["cancelled"],
                    finished_at=utcnow(),
                    error_message="Scan cancelled by request",
                )
                if not updated:
                    current = await self._db(self._repository.get_scan, scan_id)
                    raise InvalidTransitionError(
                        f"Scan {scan_id} changed to {current.status if current else 'unknown'} while cancelling"
                    )
                await self._log(scan_id, "warning", "Scan cancelled", previous_status=scan.status)
        finally:
            self._release(scan_id)

        task = self._tasks.get(scan_id)
        if task is not None and not task.done():
            task.cancel()
        return await self._get_existing(scan_id)

    async def wait(self, scan_id: str) -> None:
        """Wait until the scan's pipeline task (if owned by this process) has finished."""
        task = self._tasks.get(scan_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel every in-flight pipeline; their scans are left for the stalled-scan job."""
        tasks = [t for t in self._tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # -- state changes ------------------------------------------------------

    async def _transition(self, scan_id: str, current: str, target: str, **fields: Any) -> None:
        if not can_transition(current, target):
            raise InvalidTransitionError(f"Cannot move scan {scan_id} from {current} to {target}")
        async with self._lock(scan_id):
            scan = await self._get_existing(scan_id)
            if scan.is_terminal:
                raise CancellationRace(f"Scan {scan_id} is already {scan.status}")
            progress = max(scan.progress_percentage, STAGE_PROGRESS[target])
            updated = await self._db(
                self._repository.update_scan,
                scan_id,
                expected_status=current,
                status=target,
                progress_percentage=progress,
                progress_stage=STAGE_LABELS[target],
                **fields,
            )
            if not updated:
                raise CancellationRace(f"Scan {scan_id} left {current} before moving to {target}")
            await self._log(scan_id, "info", STAGE_LABELS[target], status=target, progress=progress)

    async def _on_progress(
        self, scan_id: str, event: ProgressEvent, scanner: str, finished: int, total: int
    ) -> None:
        async with self._lock(scan_id):
            scan = await self._db(self._repository.get_scan, scan_id)
            if scan is None or scan.status != "running":
                logger.debug("Ignoring %s progress for scan %s in state %s", scanner, scan_id, scan and scan.status)
                return
            if event == "started":
                await self._log(scan_id, "info", f"Running {scanner}", scanner=scanner)
                return
            progress = max(scan.progress_percentage, running_progress(finished, total))
            await self._db(
                self._repository.update_scan, scan_id, expected_status="running", progress_percentage=progress
            )
            await self._log(
                scan_id,
                "info",
                f"{scanner} finished ({finished}/{total})",
                scanner=scanner,
                progress=progress,
            )

    async def _fail(self, scan_id: str, message: str) -> None:
        async with self._lock(scan_id):
            updated = await self._db(
                self._repository.update_scan,
                scan_id,
                expected_status=NON_TERMINAL,
                status="failed",
                progress_stage=STAGE_LABELS["failed"],
                finished_at=utcnow(),
                error_message=message or "Scan failed",
            )
            if updated:
                await self._log(scan_id, "error", message or "Scan failed")
            else:
                logger.debug("Scan %s already terminal; not marking failed: %s", scan_id, message)

    # -- pipeline -----------------------------------------------------------

    async def _execute(
        self, scan_id: str, target: str, mode: ScanMode, requested: list[str] | None
    ) -> None:
        try:
            await asyncio.wait_for(
                self._pipeline(scan_id, target, mode, requested),
                timeout=self._settings.SCAN_TIMEOUT_SEC,
            )
        except CancellationRace as e:
            logger.debug("Discarded late result for scan %s: %s", scan_id, e.message)
        except asyncio.TimeoutError:
            await self._fail(
                scan_id, f"Scan exceeded the overall time limit of {self._settings.SCAN_TIMEOUT_SEC:.0f}s"
            )
        except asyncio.CancelledError:
            logger.debug("Pipeline for scan %s cancelled", scan_id)
            raise
        except ScanPipelineError as e:
            await self._fail(scan_id, e.message)
        except Exception as e:
            logger.exception("Unexpected error in scan %s", scan_id)
            await self._fail(scan_id, f"Internal error: {e}")

    async def _pipeline(
        self, scan_id: str, target: str, mode: ScanMode, requested: list[str] | None
    ) -> None:
        await self._transition(scan_id, "pending", "running", started_at=utcnow())

        async def on_progress(event: ProgressEvent, scanner: str, finished: int, total: int) -> None:
            await self._on_progress(scan_id, event, scanner, finished, total)

        outcome = await self._dispatcher.dispatch(target, scan_id, mode, requested, on_progress)

        async with self._lock(scan_id):
            scan = await self._db(self._repository.get_scan, scan_id)
            if scan is None or scan.is_terminal:
                raise CancellationRace(f"Scanner results for scan {scan_id} arrived after it ended")
            await self._db(self._repository.save_scanner_runs, scan_id, outcome.runs)
            for run in outcome.runs:
                if run.status == "skipped":
                    await self._log(scan_id, "info", f"{run.scanner} skipped (not applicable)", scanner=run.scanner)
                for level, message in run_error_entries(run):
                    await self._log(scan_id, level, message, scanner=run.scanner)

        check_quorum(self._settings.QUORUM_POLICY, outcome.results)

        await self._transition(scan_id, "running", "normalizing")
        vulns = await self._db(self._engine.run, outcome.vulnerabilities, target, scan_id)
        await self._log(
            scan_id,
            "info",
            f"Correlated {len(outcome.vulnerabilities)} findings into {len(vulns)} vulnerabilities",
            raw=len(outcome.vulnerabilities),
            unique=len(vulns),
        )

        status = "normalizing"
        degraded = False
        if self._enricher is not None and self._settings.ENRICHMENT_ENABLED and vulns:
            await self._transition(scan_id, "normalizing", "ai_enriching")
            status = "ai_enriching"
            vulns, degraded = await self._enrich(scan_id, self._enricher, vulns)

        await self._complete(scan_id, status, vulns, degraded)

    async def _enrich(
        self, scan_id: str, enricher: "OllamaEnricher", vulns: list[NormalizedVulnerability]
    ) -> tuple[list[NormalizedVulnerability], bool]:
        # any enrichment problem leaves the correlated findings as they are
        try:
            return await enricher.enrich(vulns), False
        except Exception as e:
            message = e.message if isinstance(e, ScanPipelineError) else f"unexpected error: {e}"
            logger.warning("Enrichment failed for scan %s: %s", scan_id, message, exc_info=True)
            async with self._lock(scan_id):
                await self._log(scan_id, "warning", f"Enrichment unavailable: {message}")
            return vulns, True

    async def _complete(
        self, scan_id: str, current: str, vulns: list[NormalizedVulnerability], degraded: bool
    ) -> None:
        async with self._lock(scan_id):
            if not await self._db(self._repository.insert_vulnerabilities, scan_id, vulns):
                raise CancellationRace(f"Vulnerabilities for scan {scan_id} arrived after it ended")
            updated = await self._db(
                self._repository.update_scan,
                scan_id,
                expected_status=current,
                status="completed",
                progress_percentage=STAGE_PROGRESS["completed"],
                progress_stage=STAGE_LABELS["completed"],
                finished_at=utcnow(),
                error_message=None,
                enrichment_degraded=degraded,
            )
            if not updated:
                raise CancellationRace(f"Scan {scan_id} left {current} before completing")
            await self._log(
                scan_id,
                "info",
                f"Scan complete: {len(vulns)} vulnerabilities",
                total=len(vulns),
                enrichment_degraded=degraded,
            )
