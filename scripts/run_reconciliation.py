"""
Run one provider reconciliation pass from the command line.

Useful after an outage of the scheduler, or to inspect what the identity
provider has logged without writing anything (--fetch-only).
"""

import argparse
import sys
from collections import Counter
from datetime import timedelta
from pathlib import Path

from loguru import logger

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from src.account_guard.errors import ReconciliationFetchError, StorageError  # noqa: E402
from src.account_guard.models.database import create_tables, utcnow  # noqa: E402
from src.account_guard.services.reconciliation_service import (  # noqa: E402
    PROVIDER_REASON_CODES,
    ProviderReconciliationJob,
    ReconciliationScheduler,
)
from src.api.dependencies import (  # noqa: E402
    close_identity_provider,
    get_identity_provider,
    get_lock_manager,
)


def fetch_only(provider, window_hours: int):
    now = utcnow()
    entries = provider.fetch_failure_log(now - timedelta(hours=window_hours), now)
    by_code = Counter(entry.reason_code for entry in entries)

    logger.info("=" * 80)
    logger.info(f"Provider failure log, last {window_hours}h: {len(entries)} entries")
    for code, count in sorted(by_code.items()):
        mapped = PROVIDER_REASON_CODES.get(code)
        logger.info(f"  {code:<10} {count:>5}  -> {mapped.value if mapped else 'skipped (unknown code)'}")
    logger.info("=" * 80)


def run(window_hours: int, purge: bool):
    provider = get_identity_provider()
    if provider is None:
        logger.error("No identity provider configured (set AUTH0_DOMAIN and management credentials)")
        sys.exit(2)

    create_tables()
    job = ProviderReconciliationJob(
        provider, lock_manager=get_lock_manager(), window=timedelta(hours=window_hours)
    )
    report = job.run()

    logger.info("=" * 80)
    logger.info("RECONCILIATION RESULTS")
    logger.info(f"Fetched: {report.fetched}")
    logger.info(f"Imported: {report.imported}")
    logger.info(f"Duplicates: {report.duplicates}")
    logger.info(f"Skipped: {report.skipped}")
    logger.info(f"Evaluated subjects: {len(report.evaluated_subjects)}")
    if report.locked_subjects:
        logger.warning(f"Locked: {', '.join(report.locked_subjects)}")
    logger.info("=" * 80)

    if purge:
        removed = ReconciliationScheduler(job).purge_expired_events()
        logger.info(f"Retention sweep removed {removed} expired events")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Reconcile failed logins from the identity provider")
    parser.add_argument(
        "--window-hours",
        type=int,
        default=24,
        help="How far back to read the provider log (default: 24)",
    )
    parser.add_argument(
        "--fetch-only",
        action="store_true",
        help="Only fetch and summarize provider entries; write nothing",
    )
    parser.add_argument(
        "--purge",
        action="store_true",
        help="Also run the event retention sweep",
    )
    args = parser.parse_args()

    try:
        if args.fetch_only:
            provider = get_identity_provider()
            if provider is None:
                logger.error("No identity provider configured")
                sys.exit(2)
            fetch_only(provider, args.window_hours)
        else:
            run(args.window_hours, args.purge)
    except ReconciliationFetchError as exc:
        logger.error(f"Could not read provider log: {exc}")
        sys.exit(1)
    except StorageError as exc:
        logger.error(f"Storage failure: {exc}")
        logger.exception(exc)
        sys.exit(1)
    finally:
        close_identity_provider()
