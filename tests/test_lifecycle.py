"""Scan lifecycle tests: end-to-end pipeline over scripted adapters and an in-memory repository."""

import asyncio
import threading
import unittest

from fakes import InMemoryScanRepository, ScriptedAdapter, make_settings, make_vuln, registry_of

from app.core.errors import EnrichmentFailure, InvalidTransitionError, ScanNotFoundError
from app.schemas.vulnerability import AdapterError
from app.services.dispatcher import Dispatcher
from app.services.lifecycle import (
    RUNNING_PROGRESS_MAX,
    ScanLifecycleManager,
    can_transition,
    running_progress,
)
from app.services.normalize import NormalizationEngine
from app.services.status import ScanStatusService

TARGET = "/workspace/repo"


class FailingEnricher:
    async def enrich(self, vulns):
        raise EnrichmentFailure("Ollama is unreachable.")


class BrokenEnricher:
    async def enrich(self, vulns):
        raise AttributeError("'list' object has no attribute 'get'")


class TaggingEnricher:
    async def enrich(self, vulns):
        return [
            v.model_copy(update={"metadata": {**v.metadata, "risk_context": {"public_facing": True}}})
            for v in vulns
        ]


class SlowInsertRepository(InMemoryScanRepository):
    """Holds vulnerability inserts for one target until released, like a row lock held elsewhere."""

    def __init__(self, slow_target: str) -> None:
        super().__init__()
        self.slow_target = slow_target
        self.release = threading.Event()

    def insert_vulnerabilities(self, scan_id, vulns):
        if self.scans[scan_id]["target"] == self.slow_target:
            self.release.wait(timeout=5)
        return super().insert_vulnerabilities(scan_id, vulns)


def _manager(repo, adapters, enricher=None, **settings) -> ScanLifecycleManager:
    config = make_settings(**settings)
    return ScanLifecycleManager(
        repo,
        Dispatcher(registry_of(*adapters), config),
        NormalizationEngine(repo),
        config,
        enricher=enricher,
    )


def _run_scan(manager: ScanLifecycleManager, mode: str = "full", scanners=None) -> str:
    async def scenario() -> str:
        scan_id = await manager.start_scan(TARGET, mode, scanners)
        await manager.wait(scan_id)
        return scan_id

    return asyncio.run(scenario())


async def _until_called(adapter: ScriptedAdapter) -> None:
    while not adapter.calls:
        await asyncio.sleep(0.005)


class TestTransitions(unittest.TestCase):
    def test_transition_table(self) -> None:
        self.assertTrue(can_transition("pending", "running"))
        self.assertTrue(can_transition("normalizing", "completed"))
        self.assertTrue(can_transition("ai_enriching", "cancelled"))
        self.assertFalse(can_transition("pending", "completed"))
        self.assertFalse(can_transition("completed", "running"))
        self.assertFalse(can_transition("cancelled", "failed"))

    def test_running_progress_is_capped(self) -> None:
        self.assertEqual(running_progress(0, 4), 0)
        self.assertEqual(running_progress(2, 4), RUNNING_PROGRESS_MAX // 2)
        self.assertEqual(running_progress(4, 4), RUNNING_PROGRESS_MAX)
        self.assertEqual(running_progress(0, 0), RUNNING_PROGRESS_MAX)


class TestSuccessfulScan(unittest.TestCase):
    def test_sast_error_and_secret_both_critical(self) -> None:
        repo = InMemoryScanRepository()
        manager = _manager(
            repo,
            [
                ScriptedAdapter("semgrep", vulns=[make_vuln("semgrep", severity="critical")]),
                ScriptedAdapter(
                    "gitleaks",
                    vulns=[
                        make_vuln(
                            "gitleaks",
                            severity="critical",
                            rule_id="aws-access-token",
                            file_path="config/settings.py",
                            code_snippet="***REDACTED***",
                        )
                    ],
                ),
            ],
        )
        scan_id = _run_scan(manager, mode="quick")
        status = ScanStatusService(repo).get_status(scan_id)
        self.assertEqual(status.scan.status, "completed")
        self.assertEqual(status.scan.progress_percentage, 100)
        self.assertEqual(status.summary.severity_counts.critical, 2)
        self.assertEqual(status.summary.total_vulnerabilities, 2)
        self.assertIsNotNone(status.scan.finished_at)
        self.assertIsNone(status.scan.error_message)

    def test_progress_monotonic_and_complete_only_at_end(self) -> None:
        repo = InMemoryScanRepository()
        adapters = [
            ScriptedAdapter("semgrep", vulns=[make_vuln("semgrep")], delay=0.01),
            ScriptedAdapter("osv", delay=0.02),
            ScriptedAdapter("gitleaks"),
        ]
        scan_id = _run_scan(_manager(repo, adapters))
        history = repo.status_history[scan_id]
        progress = [p for _, p, _ in history]
        self.assertEqual(progress, sorted(progress))
        self.assertEqual([s for s, p, _ in history if p == 100], ["completed"])
        statuses = [s for s, _, _ in history]
        self.assertEqual(statuses[0], "pending")
        self.assertIn("normalizing", statuses)
        self.assertEqual(statuses[-1], "completed")

    def test_majority_quorum_tolerates_one_fatal_container_scan(self) -> None:
        repo = InMemoryScanRepository()
        adapters = [
            ScriptedAdapter("semgrep", vulns=[make_vuln("semgrep")]),
            ScriptedAdapter("osv"),
            ScriptedAdapter("gitleaks"),
            ScriptedAdapter("checkov"),
            ScriptedAdapter("trivy", fatal="trivy could not pull base image"),
        ]
        scan_id = _run_scan(_manager(repo, adapters, QUORUM_POLICY="majority"))
        status = ScanStatusService(repo).get_status(scan_id)
        self.assertEqual(status.scan.status, "completed")
        breakdown = {s.scanner: s for s in status.summary.scanners}
        self.assertEqual(breakdown["trivy"].status, "failed")
        self.assertEqual(breakdown["trivy"].label, "Container Images")
        self.assertEqual(breakdown["trivy"].errors, ["trivy could not pull base image"])
        self.assertEqual(breakdown["semgrep"].findings, 1)
        messages = [e.message for e in repo.list_logs(scan_id)]
        self.assertTrue(any(m.startswith("trivy failed") for m in messages))

    def test_empty_scanner_set_completes_with_no_findings(self) -> None:
        repo = InMemoryScanRepository()
        scan_id = _run_scan(_manager(repo, [ScriptedAdapter("checkov", applies=False)]))
        scan = repo.get_scan(scan_id)
        self.assertEqual(scan.status, "completed")
        self.assertEqual(repo.list_vulnerabilities(scan_id), [])
        self.assertEqual([r.status for r in repo.list_scanner_runs(scan_id)], ["skipped"])

    def test_duplicates_correlated_before_persisting(self) -> None:
        repo = InMemoryScanRepository()
        adapters = [
            ScriptedAdapter(
                "semgrep",
                vulns=[make_vuln("semgrep", confidence=0.6), make_vuln("semgrep", confidence=0.9)],
            )
        ]
        scan_id = _run_scan(_manager(repo, adapters))
        (stored,) = repo.list_vulnerabilities(scan_id)
        self.assertEqual(stored.confidence, 0.9)
        self.assertEqual(stored.scan_id, scan_id)
        self.assertIn("fingerprint", stored.metadata)

    def test_enrichment_attaches_context(self) -> None:
        repo = InMemoryScanRepository()
        manager = _manager(
            repo,
            [ScriptedAdapter("semgrep", vulns=[make_vuln("semgrep")])],
            enricher=TaggingEnricher(),
            ENRICHMENT_ENABLED=True,
        )
        scan_id = _run_scan(manager)
        self.assertIn(("ai_enriching", 85), [(s, p) for s, p, _ in repo.status_history[scan_id]])
        (stored,) = repo.list_vulnerabilities(scan_id)
        self.assertEqual(stored.metadata["risk_context"], {"public_facing": True})
        self.assertFalse(repo.get_scan(scan_id).enrichment_degraded)


class TestDegradedAndFailedScans(unittest.TestCase):
    def test_enrichment_failure_degrades_but_completes(self) -> None:
        repo = InMemoryScanRepository()
        vuln = make_vuln("semgrep", severity="high", confidence=0.8)
        manager = _manager(
            repo,
            [ScriptedAdapter("semgrep", vulns=[vuln])],
            enricher=FailingEnricher(),
            ENRICHMENT_ENABLED=True,
        )
        scan_id = _run_scan(manager)
        scan = repo.get_scan(scan_id)
        self.assertEqual(scan.status, "completed")
        self.assertTrue(scan.enrichment_degraded)
        (stored,) = repo.list_vulnerabilities(scan_id)
        self.assertEqual((stored.severity, stored.confidence), ("high", 0.8))
        self.assertTrue(any("Enrichment unavailable" in e.message for e in repo.list_logs(scan_id)))

    def test_unexpected_enricher_error_still_completes(self) -> None:
        repo = InMemoryScanRepository()
        manager = _manager(
            repo,
            [ScriptedAdapter("semgrep", vulns=[make_vuln("semgrep")])],
            enricher=BrokenEnricher(),
            ENRICHMENT_ENABLED=True,
        )
        scan_id = _run_scan(manager)
        scan = repo.get_scan(scan_id)
        self.assertEqual(scan.status, "completed")
        self.assertIsNone(scan.error_message)
        self.assertTrue(scan.enrichment_degraded)
        self.assertEqual(len(repo.list_vulnerabilities(scan_id)), 1)

    def test_non_fatal_adapter_errors_are_logged(self) -> None:
        repo = InMemoryScanRepository()
        adapter = ScriptedAdapter(
            "semgrep",
            vulns=[make_vuln("semgrep")],
            errors=[
                AdapterError(message="Could not convert finding: missing path", file="src/a.py"),
                AdapterError(message="Syntax error, file skipped", severity="warning"),
            ],
        )
        scan_id = _run_scan(_manager(repo, [adapter]))
        self.assertEqual(repo.get_scan(scan_id).status, "completed")
        logged = [(e.level, e.message) for e in repo.list_logs(scan_id)]
        self.assertIn(("error", "semgrep error: Could not convert finding: missing path (src/a.py)"), logged)
        self.assertIn(("warning", "semgrep warning: Syntax error, file skipped"), logged)

    def test_all_scanners_fatal_fails_scan(self) -> None:
        repo = InMemoryScanRepository()
        adapters = [
            ScriptedAdapter("semgrep", fatal="semgrep is not installed or not on PATH"),
            ScriptedAdapter("gitleaks", raises=RuntimeError("boom")),
        ]
        scan_id = _run_scan(_manager(repo, adapters))
        scan = repo.get_scan(scan_id)
        self.assertEqual(scan.status, "failed")
        self.assertIn("Quorum not met", scan.error_message)
        self.assertEqual(repo.list_vulnerabilities(scan_id), [])
        self.assertEqual(len(repo.list_scanner_runs(scan_id)), 2)

    def test_persistence_failure_fails_scan(self) -> None:
        repo = InMemoryScanRepository()
        repo.fail_on.add("insert_vulnerabilities")
        scan_id = _run_scan(_manager(repo, [ScriptedAdapter("semgrep", vulns=[make_vuln()])]))
        scan = repo.get_scan(scan_id)
        self.assertEqual(scan.status, "failed")
        self.assertEqual(scan.error_message, "Could not insert_vulnerabilities")

    def test_overall_timeout_fails_scan(self) -> None:
        repo = InMemoryScanRepository()
        manager = _manager(repo, [ScriptedAdapter("semgrep", delay=5)], SCAN_TIMEOUT_SEC=0.05)
        scan_id = _run_scan(manager)
        scan = repo.get_scan(scan_id)
        self.assertEqual(scan.status, "failed")
        self.assertIn("overall time limit", scan.error_message)


class TestCancellation(unittest.TestCase):
    def test_cancel_running_scan_discards_results(self) -> None:
        repo = InMemoryScanRepository()
        block = asyncio.Event()
        adapter = ScriptedAdapter("semgrep", vulns=[make_vuln()], block=block)
        manager = _manager(repo, [adapter])

        async def scenario():
            scan_id = await manager.start_scan(TARGET, "full")
            await _until_called(adapter)
            cancelled = await manager.cancel_scan(scan_id)
            await manager.wait(scan_id)
            return scan_id, cancelled

        scan_id, cancelled = asyncio.run(scenario())
        self.assertEqual(cancelled.status, "cancelled")
        self.assertTrue(adapter.cancelled)
        self.assertEqual(repo.get_scan(scan_id).status, "cancelled")
        self.assertEqual(repo.list_vulnerabilities(scan_id), [])
        self.assertEqual(repo.get_scan(scan_id).error_message, "Scan cancelled by request")

    def test_late_results_after_cancel_are_dropped(self) -> None:
        repo = InMemoryScanRepository()
        block = asyncio.Event()
        adapter = ScriptedAdapter("semgrep", vulns=[make_vuln()], block=block)
        manager = _manager(repo, [adapter])

        async def scenario():
            scan_id = await manager.start_scan(TARGET, "full")
            await _until_called(adapter)
            # another process cancels through the database; this pipeline is not told
            repo.update_scan(scan_id, status="cancelled")
            block.set()
            await manager.wait(scan_id)
            return scan_id

        scan_id = asyncio.run(scenario())
        self.assertEqual(repo.get_scan(scan_id).status, "cancelled")
        self.assertEqual(repo.list_vulnerabilities(scan_id), [])
        self.assertEqual(repo.list_scanner_runs(scan_id), [])

    def test_cancel_terminal_scan_rejected(self) -> None:
        repo = InMemoryScanRepository()
        manager = _manager(repo, [ScriptedAdapter("semgrep")])
        scan_id = _run_scan(manager)

        async def cancel():
            await manager.cancel_scan(scan_id)

        with self.assertRaises(InvalidTransitionError):
            asyncio.run(cancel())
        self.assertEqual(repo.get_scan(scan_id).status, "completed")

    def test_cancel_unknown_scan(self) -> None:
        manager = _manager(InMemoryScanRepository(), [])
        with self.assertRaises(ScanNotFoundError):
            asyncio.run(manager.cancel_scan("missing"))

    def test_shutdown_cancels_in_flight_pipelines(self) -> None:
        repo = InMemoryScanRepository()
        adapter = ScriptedAdapter("semgrep", block=asyncio.Event())
        manager = _manager(repo, [adapter])

        async def scenario():
            scan_id = await manager.start_scan(TARGET, "full")
            await _until_called(adapter)
            await manager.shutdown()
            return scan_id

        scan_id = asyncio.run(scenario())
        self.assertTrue(adapter.cancelled)
        self.assertEqual(repo.get_scan(scan_id).status, "running")

    def test_cancel_right_after_start_leaves_no_bookkeeping(self) -> None:
        repo = InMemoryScanRepository()
        adapter = ScriptedAdapter("semgrep", vulns=[make_vuln()], block=asyncio.Event())
        manager = _manager(repo, [adapter])

        async def scenario():
            scan_id = await manager.start_scan(TARGET, "full")
            task = manager._tasks[scan_id]
            await manager.cancel_scan(scan_id)
            await asyncio.gather(task, return_exceptions=True)
            await asyncio.sleep(0)
            return scan_id

        scan_id = asyncio.run(scenario())
        self.assertEqual(repo.get_scan(scan_id).status, "cancelled")
        self.assertEqual(repo.list_vulnerabilities(scan_id), [])
        self.assertEqual(manager._tasks, {})
        self.assertEqual(manager._locks, {})

    def test_rejected_cancels_leave_no_locks(self) -> None:
        repo = InMemoryScanRepository()
        manager = _manager(repo, [ScriptedAdapter("semgrep")])
        finished = _run_scan(manager)

        async def cancel_all():
            for i in range(50):
                with self.assertRaises(ScanNotFoundError):
                    await manager.cancel_scan(f"unknown-{i}")
            with self.assertRaises(InvalidTransitionError):
                await manager.cancel_scan(finished)

        asyncio.run(cancel_all())
        self.assertEqual(manager._locks, {})
        self.assertEqual(manager._tasks, {})


class TestRepositoryOffLoop(unittest.TestCase):
    def test_slow_insert_does_not_hold_up_other_scans(self) -> None:
        repo = SlowInsertRepository("/workspace/slow")
        manager = _manager(repo, [ScriptedAdapter("semgrep", vulns=[make_vuln()])])

        async def scenario():
            slow = await manager.start_scan("/workspace/slow", "full")
            fast = await manager.start_scan(TARGET, "full")
            await manager.wait(fast)
            seen = (repo.get_scan(fast).status, repo.get_scan(slow).status)
            repo.release.set()
            await manager.wait(slow)
            return slow, seen

        slow, (fast_status, slow_status) = asyncio.run(scenario())
        self.assertEqual(fast_status, "completed")
        self.assertEqual(slow_status, "normalizing")
        self.assertEqual(repo.get_scan(slow).status, "completed")
