"""
Retention pruning for the attempt log and ban table.

Attempts older than the findtime window can no longer count towards a ban and
are removed. Bans are removed once they lapse (only when ban_time_seconds > 0).

Run periodically, e.g. from cron:
    python -m loginlimit.cleanup
"""

from __future__ import annotations

import argparse
import logging
from datetime import datetime, timedelta

from loginlimit.config import Settings, load_settings
from loginlimit.db import Database, PostgresAttemptStore, PostgresBanStore
from loginlimit.errors import ConfigurationError, StorageError
from loginlimit.models import PruneResult, utcnow
from loginlimit.stores import AttemptStore, BanStore

logger = logging.getLogger(__name__)


def prune(
    attempts: AttemptStore,
    bans: BanStore,
    settings: Settings,
    now: datetime | None = None,
) -> PruneResult:
    """Delete attempts outside the findtime window and lapsed bans."""
    now = now or utcnow()

    attempt_cutoff = now - timedelta(seconds=settings.find_time_seconds)
    attempts_deleted = attempts.delete_older_than(attempt_cutoff)

    bans_deleted = 0
    if settings.ban_time_seconds > 0:
        ban_cutoff = now - timedelta(seconds=settings.ban_time_seconds)
        bans_deleted = bans.delete_older_than(ban_cutoff)

    logger.info("Pruned %d attempts and %d bans", attempts_deleted, bans_deleted)
    return PruneResult(attempts_deleted=attempts_deleted, bans_deleted=bans_deleted)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Prune old login attempts and lapsed bans.")
    parser.add_argument(
        "--init-schema",
        action="store_true",
        help="Create the tables before pruning",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO)

    try:
        settings = load_settings()
    except ConfigurationError as exc:
        logger.error("%s", exc)
        return 2

    if not settings.database_url:
        logger.error("LOGINLIMIT_DATABASE_URL is not set; nothing to prune")
        return 2

    db = Database(settings.database_url, min_size=1, max_size=1)
    try:
        if args.init_schema:
            db.init_schema()
        result = prune(PostgresAttemptStore(db), PostgresBanStore(db), settings)
    except StorageError:
        return 1
    finally:
        db.close()

    print(f"Deleted {result.attempts_deleted} attempts, {result.bans_deleted} bans")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
