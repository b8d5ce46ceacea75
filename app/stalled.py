"""
CLI entrypoint for the stalled-scan job. Run from cron, e.g.:

  python -m app.stalled

Or every 10 minutes: */10 * * * * cd /path/to/vigil && .venv/bin/python -m app.stalled
"""

import logging
import sys

from app.core.config import get_settings
from app.core.database import SessionLocal
from app.core.logging import configure_logging
from app.repositories.scans import SqlAlchemyScanRepository
from app.services.stalled import fail_stalled_scans

logger = logging.getLogger(__name__)


def main() -> int:
    """Fail scans stuck in a non-terminal state longer than STALLED_SCAN_MINUTES."""
    settings = get_settings()
    configure_logging(settings)
    repository = SqlAlchemyScanRepository(SessionLocal)
    try:
        failed = fail_stalled_scans(repository, settings)
        logger.info("Stalled-scan job completed: scans_failed=%s", failed)
        return 0
    except Exception as e:
        logger.exception("Stalled-scan job failed: %s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
