"""Cron jobs from the spec, fired through the dispatcher."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from flowbot.spec.models import CronJob

if TYPE_CHECKING:
    from flowbot.dispatcher import Dispatcher

logger = logging.getLogger(__name__)


class JobScheduler:
    """Registers one APScheduler cron job per enabled spec job."""

    def __init__(self, dispatcher: Dispatcher, timezone: str | None = None) -> None:
        self.dispatcher = dispatcher
        self.timezone = timezone
        self._scheduler = AsyncIOScheduler(timezone=timezone) if timezone else AsyncIOScheduler()
        self._jobs: dict[str, CronJob] = {}

    def add(self, job: CronJob) -> bool:
        """Register *job*. Disabled jobs are skipped; returns whether it was scheduled."""
        if not job.enabled:
            logger.debug("Job %s is disabled", job.name)
            return False
        trigger = CronTrigger.from_crontab(job.cron, timezone=job.timezone or self.timezone)
        self._scheduler.add_job(
            self.dispatcher.fire_job,
            trigger=trigger,
            id=f"job_{job.name}",
            args=[job.name],
            name=job.name,
            replace_existing=True,
            coalesce=True,
        )
        self._jobs[job.name] = job
        logger.debug("Registered job %s (%s)", job.name, job.cron)
        return True

    def load(self, jobs: list[CronJob]) -> int:
        return sum(1 for job in jobs if self.add(job))

    def remove(self, name: str) -> bool:
        if name not in self._jobs:
            return False
        self._scheduler.remove_job(f"job_{name}")
        del self._jobs[name]
        return True

    def start(self) -> None:
        """Start firing jobs. Must be called with a running event loop."""
        if not self._scheduler.running:
            self._scheduler.start()
            logger.info("Scheduler started with %d job(s)", len(self._jobs))

    def shutdown(self, wait: bool = False) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
            logger.info("Scheduler shutdown")

    @property
    def is_running(self) -> bool:
        return bool(self._scheduler.running)

    @property
    def jobs(self) -> list[str]:
        return list(self._jobs)

    def next_run(self, name: str):
        job = self._scheduler.get_job(f"job_{name}")
        return job.next_run_time if job else None
