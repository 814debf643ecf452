"""
Move delivered packages older than N months to cold storage.

Meant to be run on demand or from an external cron.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from parcelvault.config import get_settings
from parcelvault.dependencies import get_lifecycle_manager

logger = logging.getLogger(__name__)


def main() -> int:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Archive old delivered packages")
    parser.add_argument(
        "-m",
        "--months-old",
        type=int,
        default=settings.archive_months_default,
        help="Archive packages delivered more than this many months ago",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(name)s %(levelname)s %(asctime)s %(message)s",
        datefmt="%m/%d/%Y %I:%M:%S %p",
    )

    result = get_lifecycle_manager().archive_old_packages(args.months_old)
    logger.info(
        "Archived %d packages (cutoff %s)", result.archived_count, result.cutoff.isoformat()
    )
    if result.failed_ids:
        logger.error("Failed to archive %d packages: %s", len(result.failed_ids), result.failed_ids)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
