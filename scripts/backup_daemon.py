"""
Run the backup rotation outside the API process.

By default arms the scheduler from the stored backup settings and keeps
the process alive; ``--once`` runs a single backup of every location.
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from parcelvault.dependencies import (
    get_backup_manager,
    get_backup_scheduler,
    get_blob_store,
    get_db_client,
)
from parcelvault.errors import ParcelVaultError

logger = logging.getLogger(__name__)


def main() -> int:
    parser = argparse.ArgumentParser(description="Backup rotation daemon")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single backup of every location and exit",
    )
    parser.add_argument(
        "--location",
        type=str,
        default=None,
        help="With --once, back up only this location id",
    )
    parser.add_argument(
        "--frequency-hours",
        type=int,
        default=None,
        help="Override the stored backup frequency",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(name)s %(levelname)s %(asctime)s %(message)s",
        datefmt="%m/%d/%Y %I:%M:%S %p",
    )

    manager = get_backup_manager()
    if args.once:
        try:
            if args.location:
                outcomes = [manager.run_backup_for_location(args.location)]
            else:
                outcomes = manager.run_backup_for_all_locations().outcomes
        except ParcelVaultError as exc:
            logger.error("Backup not run: %s", exc.message)
            return 1
        for outcome in outcomes:
            logger.info("%s: %s %s", outcome.name, outcome.status.value, outcome.bin_id or outcome.error)
        return 0 if all(o.success for o in outcomes) else 1

    scheduler = get_backup_scheduler()
    if args.frequency_hours:
        scheduler.start(args.frequency_hours)
    elif not scheduler.initialize_from_settings(get_db_client(), get_blob_store().configured):
        logger.error("Backups are not enabled; nothing to schedule")
        return 1

    stop = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: stop.set())
    signal.signal(signal.SIGINT, lambda *_: stop.set())
    logger.info("Backup daemon running (next run %s)", scheduler.next_run_time)
    stop.wait()
    scheduler.shutdown(wait=True)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
