"""Scheduler for central maintenance tasks.

This module provides:
- Hourly flagging of instances silent longer than the offline limit
- Daily purge of delivered remote commands
- Manual run functions for CLI usage
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

if TYPE_CHECKING:
    from edgesync.server.database import Database

logger = logging.getLogger(__name__)


def flag_stale_instances(db: Database, offline_limit_days: int = 7) -> list[str]:
    """Require a full resync from instances that have been silent too long.

    Args:
        db: Database instance.
        offline_limit_days: Silence tolerated before a full resync is required.

    Returns:
        Server identifiers that were flagged.
    """
    flagged = db.flag_stale_instances(timedelta(days=offline_limit_days))
    if flagged:
        logger.warning(
            "Flagged %d instance(s) for full sync after %d days offline: %s",
            len(flagged),
            offline_limit_days,
            ", ".join(flagged),
        )
    else:
        logger.debug("Stale check: no instance silent for %d days", offline_limit_days)
    return flagged


class MaintenanceScheduler:
    """Scheduler for central maintenance tasks.

    Runs:
    - Stale instance check every hour at minute 0
    - Delivered command purge daily at the configured time
    """

    def __init__(
        self,
        db: Database,
        offline_limit_days: int = 7,
        command_retention_days: int = 30,
        hour: int = 3,
        minute: int = 0,
    ) -> None:
        """Initialize the scheduler.

        Args:
            db: Database instance.
            offline_limit_days: Silence tolerated before a full resync is required.
            command_retention_days: Days to keep delivered commands.
            hour: Hour to run the purge job (0-23).
            minute: Minute to run the purge job (0-59).
        """
        self._db = db
        self._offline_limit_days = offline_limit_days
        self._command_retention_days = command_retention_days
        self._hour = hour
        self._minute = minute
        self._scheduler: BackgroundScheduler | None = None

    @property
    def running(self) -> bool:
        """Check if the scheduler is running."""
        return self._scheduler is not None

    def _stale_job(self) -> None:
        """Job function for the stale instance check."""
        try:
            flag_stale_instances(self._db, self._offline_limit_days)
        except Exception:
            logger.exception("Error during stale instance check")

    def _purge_commands_job(self) -> None:
        """Job function for the delivered command purge."""
        logger.info(
            "Starting scheduled command purge (retention: %d days)",
            self._command_retention_days,
        )
        try:
            deleted = self._db.purge_delivered_commands(self._command_retention_days)
            if deleted > 0:
                logger.info("Command purge: %d delivered commands deleted", deleted)
            else:
                logger.debug(
                    "Command purge: no commands older than %d days",
                    self._command_retention_days,
                )
        except Exception:
            logger.exception("Error during scheduled command purge")

    def start(self) -> None:
        """Start the scheduler."""
        if self._scheduler is not None:
            return

        self._scheduler = BackgroundScheduler()

        self._scheduler.add_job(
            self._stale_job,
            trigger=CronTrigger(minute=0),
            id="stale_instances",
            name="Hourly stale instance check",
            replace_existing=True,
        )
        self._scheduler.add_job(
            self._purge_commands_job,
            trigger=CronTrigger(hour=self._hour, minute=self._minute),
            id="command_purge",
            name="Daily delivered command purge",
            replace_existing=True,
        )

        self._scheduler.start()
        logger.info(
            "Maintenance scheduler started (offline limit: %d days, purge daily at %02d:%02d)",
            self._offline_limit_days,
            self._hour,
            self._minute,
        )

    def stop(self) -> None:
        """Stop the scheduler."""
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("Maintenance scheduler stopped")

    def run_now(self) -> tuple[list[str], int]:
        """Run both maintenance tasks immediately (manual trigger).

        Returns:
            Tuple of (flagged server ids, purged command count).
        """
        flagged = flag_stale_instances(self._db, self._offline_limit_days)
        purged = self._db.purge_delivered_commands(self._command_retention_days)
        return flagged, purged
