from typing import Any

import pydantic
import structlog

from scrapeflow.config.settings import Settings
from scrapeflow.db.stores import ResultStore
from scrapeflow.models.job import Job, JobFilter, JobPage, JobStatus, ScrapingConfig
from scrapeflow.models.result import Result
from scrapeflow.scraping.validator.config_validator import (
    parse_scraping_config,
    validate_scraping_config,
)
from scrapeflow.services.circuit_breaker import CircuitBreaker
from scrapeflow.services.job_manager import JobManager
from scrapeflow.services.job_scheduler import JobScheduler
from scrapeflow.services.rate_limiter import RateLimiter
from scrapeflow.services.resilience import ResilientCaller
from scrapeflow.services.state_machine import is_terminal
from scrapeflow.utils.errors import (
    InvalidStateError,
    InvalidStateTransition,
    NotFoundError,
    ValidationError,
)

log = structlog.get_logger()


class ScrapingService:
    """Public job operations behind a service-wide rate limit and breaker.

    Nothing is retried at this layer; the scheduler, stores and pipeline retry
    their own outward calls.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        jobs: JobManager,
        results: ResultStore,
        scheduler: JobScheduler,
        guard: ResilientCaller | None = None,
    ):
        self.settings = settings
        self.jobs = jobs
        self.results = results
        self.scheduler = scheduler
        self.guard = guard or ResilientCaller(
            "scraping-service",
            breaker=CircuitBreaker(
                "scraping-service",
                error_threshold_pct=settings.breaker_error_threshold_pct,
                min_requests=settings.breaker_min_requests,
                window_ms=settings.breaker_window_ms,
                reset_timeout_ms=settings.breaker_reset_timeout_ms,
            ),
            rate_limiter=RateLimiter(
                settings.service_rate_limit_requests,
                settings.service_rate_limit_window_ms,
                name="scraping-service",
            ),
        )

    async def start_job(self, config: ScrapingConfig | dict[str, Any]) -> Job:
        return await self.guard.call(self._start_job, config)

    async def get_job(self, job_id: str) -> Job:
        return await self.guard.call(self.jobs.get, job_id)

    async def stop_job(self, job_id: str) -> Job:
        return await self.guard.call(self._stop_job, job_id)

    async def list_jobs(self, filter: JobFilter | dict[str, Any] | None = None) -> JobPage:
        return await self.guard.call(self._list_jobs, filter)

    async def get_job_result(self, job_id: str) -> Result:
        return await self.guard.call(self._get_job_result, job_id)

    async def execute_job(self, job_id: str) -> Job:
        """Run a job now. Entry point for workers and scheduler triggers."""
        job = await self.jobs.execute_job(job_id)
        if is_terminal(job.status):
            try:
                await self._retire_schedule(job_id)
            except Exception:
                # Metadata stays, so the next trigger or stop_job retries the removal.
                log.exception("schedule_retire_failed", job_id=job_id)
        return job

    async def handle_trigger(self, job_id: str) -> Any:
        """Scheduler callback. A finished job's trigger is removed instead of run."""
        job = await self.jobs.get(job_id)
        if is_terminal(job.status) and self.scheduler.is_scheduled(job_id):
            await self._retire_schedule(job_id)
            return job
        return await self.scheduler.handle_trigger(job_id)

    async def _start_job(self, config: ScrapingConfig | dict[str, Any]) -> Job:
        config = parse_scraping_config(config)
        validate_scraping_config(config)

        if not config.schedule.enabled:
            return await self.jobs.create_job(config)

        scheduled = await self.scheduler.schedule(config)
        try:
            return await self.jobs.create_job(config, JobStatus.SCHEDULED, job_id=scheduled.id)
        except Exception:
            log.error("scheduled_job_persist_failed", job_id=scheduled.id)
            try:
                await self.scheduler.unschedule(scheduled.id)
            except Exception:
                log.exception("scheduled_job_rollback_failed", job_id=scheduled.id)
            raise

    async def _stop_job(self, job_id: str) -> Job:
        job = await self.jobs.get(job_id)
        if is_terminal(job.status):
            await self._retire_schedule(job_id)
            raise InvalidStateTransition(
                f"Cannot stop job in {job.status} state",
                current=str(job.status),
                target=str(JobStatus.CANCELLED),
            )

        cancelled = await self.jobs.cancel(job_id)
        if self.scheduler.is_scheduled(job_id):
            await self.scheduler.unschedule(job_id)
        log.info("job_stopped", job_id=job_id, previous=str(job.status))
        return cancelled

    async def _retire_schedule(self, job_id: str) -> None:
        if not self.scheduler.is_scheduled(job_id):
            return
        try:
            await self.scheduler.unschedule(job_id)
        except NotFoundError:
            return
        log.info("schedule_retired", job_id=job_id)

    async def _list_jobs(self, filter: JobFilter | dict[str, Any] | None) -> JobPage:
        if not isinstance(filter, JobFilter):
            try:
                filter = JobFilter.model_validate(filter or {})
            except pydantic.ValidationError as e:
                raise ValidationError(
                    "Invalid job filter",
                    details={"errors": e.errors(include_url=False, include_context=False)},
                ) from e

        jobs, total = await self.jobs.store.list(filter)
        return JobPage(jobs=jobs, total=total, page=filter.page, page_size=filter.page_size)

    async def _get_job_result(self, job_id: str) -> Result:
        job = await self.jobs.get(job_id)
        if job.status != JobStatus.COMPLETED:
            raise InvalidStateError(
                f"Job {job_id} is {job.status}; results exist only for COMPLETED jobs",
                details={"status": str(job.status)},
            )
        result = await self.results.get_by_job(job_id)
        if result is None:
            raise NotFoundError(f"No result stored for job {job_id}")
        return result
