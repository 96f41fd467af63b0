import asyncio
from collections.abc import Awaitable, Callable
from typing import Any
from uuid import uuid4

import structlog

from scrapeflow.config.constants import SCHEDULE_ID_PREFIX
from scrapeflow.config.settings import Settings
from scrapeflow.models.job import Job, JobStatus, ScrapingConfig
from scrapeflow.models.schedule import RetryPolicy, ScheduleMetadata
from scrapeflow.scraping.validator.config_validator import validate_schedule
from scrapeflow.services.resilience import ResilientCaller
from scrapeflow.services.schedule_registry import ScheduleRegistry
from scrapeflow.services.scheduler_backend import SchedulerBackend
from scrapeflow.utils.errors import NotFoundError

log = structlog.get_logger()

JobExecutor = Callable[[str], Awaitable[Any]]


def schedule_id_for(job_id: str) -> str:
    return f"{SCHEDULE_ID_PREFIX}{job_id}"


class JobScheduler:
    """Registers recurring triggers and turns trigger events into job executions."""

    def __init__(
        self,
        *,
        settings: Settings,
        backend: SchedulerBackend,
        registry: ScheduleRegistry,
        caller: ResilientCaller,
        execute: JobExecutor,
        retry_policy: RetryPolicy | None = None,
    ):
        self.settings = settings
        self.backend = backend
        self.registry = registry
        self.caller = caller
        self._execute = execute
        self.retry_policy = retry_policy or RetryPolicy.scheduler_default()
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, job_id: str) -> asyncio.Lock:
        return self._locks.setdefault(job_id, asyncio.Lock())

    def callback_target(self, job_id: str) -> str:
        return f"{self.settings.scheduler_callback_url.rstrip('/')}/jobs/{job_id}/execute"

    async def schedule(self, config: ScrapingConfig, job_id: str | None = None) -> Job:
        validate_schedule(config.schedule)
        cron_expression = config.schedule.cron_expression
        timezone = config.schedule.timezone
        assert cron_expression and timezone

        job_id = job_id or str(uuid4())
        schedule_id = schedule_id_for(job_id)
        target = self.callback_target(job_id)

        try:
            async with self._lock_for(job_id):
                await self.caller.call(
                    self.backend.register_trigger,
                    schedule_id,
                    cron_expression,
                    timezone,
                    target,
                    self.retry_policy,
                )
                self.registry.put(
                    ScheduleMetadata(
                        job_id=job_id,
                        schedule_id=schedule_id,
                        cron_expression=cron_expression,
                        timezone=timezone,
                        retry_policy=self.retry_policy,
                        callback_target=target,
                    )
                )
        except BaseException:
            if not self.is_scheduled(job_id):
                self._locks.pop(job_id, None)
            raise

        log.info(
            "job_scheduled",
            job_id=job_id,
            schedule_id=schedule_id,
            cron_expression=cron_expression,
            timezone=timezone,
        )
        return Job(id=job_id, config=config, status=JobStatus.SCHEDULED)

    async def handle_trigger(self, job_id: str) -> Any:
        schedule = self.registry.get(job_id)
        if schedule is None:
            raise NotFoundError(f"No schedule found for job {job_id}")
        log.info("schedule_trigger_received", job_id=job_id, schedule_id=schedule.schedule_id)
        return await self._execute(job_id)

    async def unschedule(self, job_id: str) -> None:
        async with self._lock_for(job_id):
            schedule = self.registry.get(job_id)
            if schedule is None:
                raise NotFoundError(f"No schedule found for job {job_id}")
            # Metadata is only dropped once the external trigger is gone, so a
            # failed deregistration can be retried.
            try:
                await self.caller.call(self.backend.deregister_trigger, schedule.schedule_id)
            except NotFoundError:
                log.warning(
                    "schedule_trigger_missing", job_id=job_id, schedule_id=schedule.schedule_id
                )
            self.registry.remove(job_id)
        self._locks.pop(job_id, None)
        log.info("job_unscheduled", job_id=job_id, schedule_id=schedule.schedule_id)

    def list(self) -> list[ScheduleMetadata]:
        return self.registry.snapshot()

    def is_scheduled(self, job_id: str) -> bool:
        return self.registry.get(job_id) is not None
