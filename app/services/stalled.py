"""Stalled-scan detection: fail scans stuck in a non-terminal state past STALLED_SCAN_MINUTES."""

import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from app.repositories.scans import ScanRepository
from app.schemas.vulnerability import utcnow
from app.services.lifecycle import NON_TERMINAL, STAGE_LABELS

if TYPE_CHECKING:
    from app.core.config import Settings

logger = logging.getLogger(__name__)


def fail_stalled_scans(repository: ScanRepository, settings: "Settings") -> int:
    """
    Mark every scan not updated for STALLED_SCAN_MINUTES as failed.

    Returns the number of scans failed. Idempotent: a scan that finished in
    the meantime is left alone by the compare-and-set update.
    """
    cutoff = utcnow() - timedelta(minutes=settings.STALLED_SCAN_MINUTES)
    failed = 0
    for scan in repository.list_stalled_scans(cutoff):
        message = (
            f"Scan stalled in {scan.status} for more than "
            f"{settings.STALLED_SCAN_MINUTES} minutes"
        )
        updated = repository.update_scan(
            scan.id,
            expected_status=NON_TERMINAL,
            status="failed",
            progress_stage=STAGE_LABELS["failed"],
            finished_at=utcnow(),
            error_message=message,
        )
        if not updated:
            continue
        repository.append_log(scan.id, "error", message, {"previous_status": scan.status})
        failed += 1

    if failed > 0:
        logger.info(
            "Stalled-scan run: cutoff=%s, scans_failed=%s",
            cutoff.isoformat(),
            failed,
        )
    return failed
