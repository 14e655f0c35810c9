"""APScheduler-based interval scheduling for connection syncs and correlation."""

from __future__ import annotations

import logging
from typing import Optional

from apscheduler.events import EVENT_JOB_ERROR
from apscheduler.schedulers.base import BaseScheduler
from apscheduler.schedulers.blocking import BlockingScheduler

from scripts.saasmgmt.config import SchedulerConfig
from scripts.saasmgmt.connections import ConnectionStore
from scripts.saasmgmt.correlation import CrossPlatformCorrelator
from scripts.saasmgmt.errors import SaasMgmtError
from scripts.saasmgmt.sync_runner import SyncRunner

logger = logging.getLogger("saasmgmt.scheduler")


def sync_job_id(company_id: str, app_type: str) -> str:
    return f"sync:{company_id}:{app_type}"


def correlate_job_id(company_id: str) -> str:
    return f"correlate:{company_id}"


def _sync_connection(runner: SyncRunner, company_id: str, app_type: str) -> None:
    """Sync every active connection of one vendor.

    Failures are logged; the next interval tries again.
    """
    try:
        results = runner.sync_company(company_id, [app_type])
    except SaasMgmtError as exc:
        logger.error(
            "Scheduled sync failed: %s", exc,
            extra={"company_id": company_id, "app_type": app_type},
        )
        return
    for label, outcome in results.items():
        if "error" in outcome:
            logger.error(
                "Scheduled sync of %s failed: %s", label, outcome["error"],
                extra={"company_id": company_id, "app_type": app_type},
            )


def _correlate(correlator: CrossPlatformCorrelator, company_id: str) -> None:
    try:
        correlator.correlate(company_id)
    except Exception as exc:
        logger.error("Scheduled correlation failed: %s", exc, extra={"company_id": company_id})


def _on_job_error(event) -> None:
    """Log job execution errors."""
    logger.error(
        "Job %s raised an exception: %s",
        event.job_id,
        event.exception,
    )


class SyncScheduler:
    """One interval job per connected vendor plus one correlation job per company.

    Jobs never overlap themselves (max_instances=1). Different jobs for the
    same company are not mutually excluded.
    """

    def __init__(
        self,
        config: SchedulerConfig,
        runner: SyncRunner,
        correlator: CrossPlatformCorrelator,
        connections: ConnectionStore,
        scheduler: Optional[BaseScheduler] = None,
    ) -> None:
        self.config = config
        self.runner = runner
        self.correlator = correlator
        self.connections = connections
        self.scheduler = scheduler or BlockingScheduler()
        self.scheduler.add_listener(_on_job_error, EVENT_JOB_ERROR)

    def _add_interval_job(self, job_id: str, func, minutes: int, args: list) -> None:
        if self.scheduler.get_job(job_id) is not None:
            self.scheduler.remove_job(job_id)
        self.scheduler.add_job(
            func,
            "interval",
            minutes=minutes,
            args=args,
            id=job_id,
            max_instances=1,
            misfire_grace_time=self.config.misfire_grace_time,
        )

    def schedule_connection(self, company_id: str, app_type: str) -> str:
        job_id = sync_job_id(company_id, app_type)
        self._add_interval_job(
            job_id,
            _sync_connection,
            self.config.interval_for(app_type),
            [self.runner, company_id, app_type],
        )
        if self.scheduler.get_job(correlate_job_id(company_id)) is None:
            self.schedule_correlation(company_id)
        logger.info("Scheduled %s", job_id, extra={"company_id": company_id, "app_type": app_type})
        return job_id

    def schedule_correlation(self, company_id: str) -> str:
        job_id = correlate_job_id(company_id)
        self._add_interval_job(
            job_id,
            _correlate,
            self.config.correlation_interval_min,
            [self.correlator, company_id],
        )
        return job_id

    def cancel_connection(self, company_id: str, app_type: str) -> bool:
        """Remove the job; a run already in progress is left to finish."""
        job_id = sync_job_id(company_id, app_type)
        if self.scheduler.get_job(job_id) is None:
            return False
        self.scheduler.remove_job(job_id)
        logger.info("Cancelled %s", job_id, extra={"company_id": company_id, "app_type": app_type})
        return True

    def schedule_company(self, company_id: str) -> list[str]:
        job_ids = [
            self.schedule_connection(company_id, c["app_type"])
            for c in self.connections.list_active(company_id=company_id)
        ]
        job_ids.append(self.schedule_correlation(company_id))
        return job_ids

    def schedule_all(self) -> list[str]:
        companies = sorted({c["company_id"] for c in self.connections.list_active()})
        job_ids: list[str] = []
        for company_id in companies:
            job_ids.extend(self.schedule_company(company_id))
        return job_ids

    def start(self) -> None:
        self.schedule_all()
        logger.info("Starting scheduler with jobs: %s", [j.id for j in self.scheduler.get_jobs()])
        self.scheduler.start()
