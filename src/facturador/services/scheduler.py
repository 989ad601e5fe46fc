"""Background retry loop for authority submissions."""

from __future__ import annotations

import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from facturador.services.exceptions import FacturadorError
from facturador.services.submission import SubmissionCoordinator

logger = logging.getLogger(__name__)

JOB_ID = "verifactu_submissions"


class SubmissionScheduler:
    """Runs ``coordinator.process_due`` every ``scheduler_interval`` seconds."""

    def __init__(self, coordinator: SubmissionCoordinator, interval: float | None = None) -> None:
        self.coordinator = coordinator
        self.interval = interval or coordinator.settings.scheduler_interval
        self._scheduler: BackgroundScheduler | None = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None

    def start(self) -> None:
        if self._scheduler is not None:
            logger.warning("Submission scheduler already running")
            return

        self._scheduler = BackgroundScheduler()
        self._scheduler.add_job(
            func=self.run_once,
            trigger=IntervalTrigger(seconds=self.interval),
            id=JOB_ID,
            name="Retry pending Verifactu submissions",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info("Submission scheduler started (every %.0fs)", self.interval)

    def stop(self, wait: bool = True) -> None:
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=wait)
            self._scheduler = None
            logger.info("Submission scheduler stopped")

    def run_once(self) -> int:
        """One pass; returns how many records were processed."""
        try:
            results = self.coordinator.process_due()
        except FacturadorError:
            # Ledger busy or halted issuer: next tick tries again
            logger.error("Submission pass failed", exc_info=True)
            return 0
        return len(results)
