"""Job execution: state transitions, checkpoints and the collect -> process run."""

import asyncio
from collections.abc import Callable
from typing import Any
from uuid import uuid4

import structlog

from scrapeflow.config.settings import Settings
from scrapeflow.db.stores import JobStore, ResultStore
from scrapeflow.models.job import (
    ErrorCategory,
    Job,
    JobError,
    JobMetrics,
    JobStatus,
    ScrapingConfig,
    utcnow,
)
from scrapeflow.models.result import Result
from scrapeflow.models.schedule import RetryPolicy
from scrapeflow.models.scraping import RawContent
from scrapeflow.scraping.collector import CollectionStrategy
from scrapeflow.services.circuit_breaker import CircuitBreaker
from scrapeflow.services.data_pipeline import DataPipeline
from scrapeflow.services.rate_limiter import RateLimiter
from scrapeflow.services.resilience import ResilientCaller
from scrapeflow.services.state_machine import RUNNABLE_STATES, assert_transition
from scrapeflow.utils.errors import (
    CircuitOpenError,
    CollectionError,
    InvalidStateError,
    InvalidStateTransition,
    NotFoundError,
    RateLimitedError,
    ScrapeflowError,
    StaleUpdateError,
    ValidationError,
    error_code,
    is_transient,
)

log = structlog.get_logger()

Patch = Callable[[Job], dict[str, Any]]

_MAX_CAS_ATTEMPTS = 5


def categorize(exc: BaseException) -> ErrorCategory:
    if isinstance(exc, RateLimitedError):
        return ErrorCategory.RATE_LIMIT
    if isinstance(exc, TimeoutError):
        return ErrorCategory.TIMEOUT
    if isinstance(exc, ValidationError):
        return ErrorCategory.VALIDATION
    if isinstance(exc, CollectionError) and exc.details.get("status") in (401, 403):
        return ErrorCategory.AUTHENTICATION
    if isinstance(exc, CircuitOpenError) or is_transient(exc):
        return ErrorCategory.NETWORK
    return ErrorCategory.SYSTEM


def to_job_error(exc: BaseException) -> JobError:
    retryable = isinstance(exc, (RateLimitedError, CircuitOpenError)) or is_transient(exc)
    message = exc.message if isinstance(exc, ScrapeflowError) else str(exc)
    return JobError(
        code=error_code(exc),
        category=categorize(exc),
        message=message or type(exc).__name__,
        retryable=retryable,
    )


class JobManager:
    """Owns job lifecycle writes and runs individual job executions.

    Every write goes through ``transition`` or ``checkpoint``, both of which
    re-read and retry on a stale version so a conflicting concurrent write is
    re-checked against the state machine instead of overwritten.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        store: JobStore,
        result_store: ResultStore,
        pipeline: DataPipeline,
        collector: CollectionStrategy,
        collector_breaker: CircuitBreaker | None = None,
    ):
        self.settings = settings
        self.store = store
        self.result_store = result_store
        self.pipeline = pipeline
        self.collector = collector
        self.collector_breaker = collector_breaker or CircuitBreaker(
            "collector",
            error_threshold_pct=settings.breaker_error_threshold_pct,
            min_requests=settings.breaker_min_requests,
            window_ms=settings.breaker_window_ms,
            reset_timeout_ms=settings.breaker_reset_timeout_ms,
        )
        self._active: dict[str, asyncio.Task[Job]] = {}
        self._limiters: dict[str, RateLimiter] = {}

    async def get(self, job_id: str) -> Job:
        job = await self.store.get(job_id)
        if job is None:
            raise NotFoundError(f"Job not found: {job_id}")
        return job

    async def create_job(
        self,
        config: ScrapingConfig,
        status: JobStatus = JobStatus.PENDING,
        job_id: str | None = None,
    ) -> Job:
        if status not in RUNNABLE_STATES:
            raise InvalidStateTransition(
                f"Jobs cannot be created in {status}", current="", target=str(status)
            )
        job = await self.store.create(Job(id=job_id or str(uuid4()), config=config, status=status))
        log.info("job_created", job_id=job.id, status=str(job.status), url=config.source.url)
        return job

    async def transition(
        self, job_id: str, target: JobStatus, patch: Patch | None = None
    ) -> Job:
        for _ in range(_MAX_CAS_ATTEMPTS):
            job = await self.get(job_id)
            assert_transition(job.status, target)
            changes = {"status": target, **(patch(job) if patch else {})}
            try:
                updated = await self.store.update(job_id, changes, job.version)
            except StaleUpdateError:
                log.debug("job_update_conflict", job_id=job_id, target=str(target))
                continue
            log.info(
                "job_status_changed",
                job_id=job_id,
                previous=str(job.status),
                status=str(target),
            )
            return updated
        raise StaleUpdateError(f"Job {job_id} kept changing while moving to {target}")

    async def checkpoint(self, job_id: str, name: str, progress: int) -> Job:
        """Record progress on a running job. Progress never moves backwards."""
        for _ in range(_MAX_CAS_ATTEMPTS):
            job = await self.get(job_id)
            if job.status != JobStatus.RUNNING:
                raise InvalidStateError(
                    f"Job {job_id} is {job.status}, not RUNNING",
                    details={"status": str(job.status)},
                )
            details = job.execution_details.model_copy(
                update={
                    "progress": max(job.execution_details.progress, min(progress, 100)),
                    "last_checkpoint": name,
                }
            )
            try:
                return await self.store.update(
                    job_id, {"execution_details": details}, job.version
                )
            except StaleUpdateError:
                continue
        raise StaleUpdateError(f"Job {job_id} kept changing during checkpoint {name}")

    def is_active(self, job_id: str) -> bool:
        return job_id in self._active

    async def execute_job(self, job_id: str) -> Job:
        """Run one execution of a PENDING or SCHEDULED job to a terminal state.

        Deliveries for a job that already left those states are skipped, which
        makes repeated trigger callbacks harmless.
        """
        job = await self.get(job_id)
        if job.status not in RUNNABLE_STATES or job_id in self._active:
            log.warning("job_execution_skipped", job_id=job_id, status=str(job.status))
            return job

        task = asyncio.create_task(self._run(job_id), name=f"job-{job_id}")
        self._active[job_id] = task
        try:
            return await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            # Only the job task ended cancelled: cancel() here, or a stop seen in the store.
            return await self.get(job_id)
        finally:
            self._active.pop(job_id, None)
            self._limiters.pop(job_id, None)

    async def cancel(self, job_id: str) -> Job:
        job = await self.transition(
            job_id,
            JobStatus.CANCELLED,
            lambda j: {
                "execution_details": j.execution_details.model_copy(
                    update={"end_time": utcnow()}
                )
            },
        )
        task = self._active.get(job_id)
        if task is not None and not task.done():
            task.cancel()
            log.info("job_task_cancelled", job_id=job_id)
        self._limiters.pop(job_id, None)
        return job

    def _collector_caller(self, job: Job) -> ResilientCaller:
        opts = job.config.options
        limiter = self._limiters.get(job.id)
        if limiter is None:
            limiter = RateLimiter(
                opts.rate_limit.requests, opts.rate_limit.period, name=f"job-{job.id}"
            )
            self._limiters[job.id] = limiter
        policy = RetryPolicy(
            max_attempts=opts.retry_attempts + 1,
            initial_delay_ms=opts.retry_delay,
            max_delay_ms=max(opts.retry_delay, self.settings.retry_max_delay_ms),
            backoff_multiplier=self.settings.retry_factor,
        )
        return ResilientCaller(
            "collector",
            breaker=self.collector_breaker,
            rate_limiter=limiter,
            retry_policy=policy,
        )

    async def _ensure_running(self, job_id: str) -> None:
        # A stop issued from another process only shows up in the store.
        job = await self.get(job_id)
        if job.status != JobStatus.RUNNING:
            log.info("job_stop_observed", job_id=job_id, status=str(job.status))
            raise asyncio.CancelledError(f"Job {job_id} is {job.status}")

    async def _collect_once(self, config: ScrapingConfig) -> RawContent:
        return await asyncio.wait_for(
            self.collector.execute(config), timeout=config.options.timeout / 1000.0
        )

    async def _run(self, job_id: str) -> Job:
        started = utcnow()
        try:
            job = await self.transition(
                job_id,
                JobStatus.RUNNING,
                lambda j: {
                    "execution_details": j.execution_details.model_copy(
                        update={
                            "start_time": started,
                            "end_time": None,
                            "attempts": j.execution_details.attempts + 1,
                            "progress": 0,
                            "last_checkpoint": "started",
                        }
                    ),
                    "error": None,
                },
            )
        except InvalidStateTransition:
            # Another delivery won the race to RUNNING.
            log.warning("job_execution_skipped", job_id=job_id)
            return await self.get(job_id)

        jlog = log.bind(job_id=job_id)
        jlog.info("job_started", url=job.config.source.url)

        retries = 0
        last_retry_at = None

        def on_retry(attempt: int, exc: BaseException) -> None:
            nonlocal retries, last_retry_at
            retries += 1
            last_retry_at = utcnow()

        try:
            raw = await self._collector_caller(job).call(
                self._collect_once, job.config, on_retry=on_retry
            )
            await self.checkpoint(job_id, "collected", 40)

            result = Result.new(
                job_id=job_id,
                source_type=job.config.source.type,
                source_url=raw.url or job.config.source.url,
                content=raw.content,
                content_type=raw.content_type,
            )
            await self.pipeline.process(
                result, ensure_active=lambda: self._ensure_running(job_id)
            )
            await self.checkpoint(job_id, "processed", 90)
            await self.result_store.save(result)
        except asyncio.CancelledError:
            jlog.warning("job_cancelled_in_flight")
            raise
        except Exception as e:
            return await self._fail(job_id, e, retries, last_retry_at)

        ended = utcnow()
        attempts = retries + 1
        metrics = JobMetrics(
            request_count=attempts,
            bytes_processed=raw.bytes_received,
            items_scraped=result.metadata.item_count,
            error_count=retries,
            avg_response_time_ms=float(raw.duration_ms),
            success_rate=100.0 / attempts,
            retry_rate=100.0 * retries / attempts,
        )
        try:
            completed = await self.transition(
                job_id,
                JobStatus.COMPLETED,
                lambda j: {
                    "execution_details": j.execution_details.model_copy(
                        update={
                            "end_time": ended,
                            "duration_ms": int((ended - started).total_seconds() * 1000),
                            "progress": 100,
                            "last_checkpoint": "completed",
                            "metrics": metrics,
                        }
                    ),
                    "retry_count": retries,
                    "last_retry_at": last_retry_at,
                },
            )
        except InvalidStateTransition:
            jlog.warning("job_completion_discarded")
            return await self.get(job_id)

        jlog.info(
            "job_completed",
            duration_ms=completed.execution_details.duration_ms,
            retries=retries,
            validation_status=str(result.metadata.validation_status),
        )
        return completed

    async def _fail(
        self, job_id: str, exc: Exception, retries: int, last_retry_at: Any
    ) -> Job:
        job_error = to_job_error(exc)
        ended = utcnow()
        try:
            failed = await self.transition(
                job_id,
                JobStatus.FAILED,
                lambda j: {
                    "execution_details": j.execution_details.model_copy(
                        update={"end_time": ended, "last_checkpoint": "failed"}
                    ),
                    "error": job_error,
                    "retry_count": retries,
                    "last_retry_at": last_retry_at,
                },
            )
        except InvalidStateTransition:
            # Cancelled elsewhere; the checkpoint noticed and unwound here.
            log.warning("job_failure_discarded", job_id=job_id, code=job_error.code)
            return await self.get(job_id)

        log.error(
            "job_failed",
            job_id=job_id,
            code=job_error.code,
            category=str(job_error.category),
            error=job_error.message,
            retries=retries,
        )
        return failed
