"""Job and result stores.

Every job mutation is a compare-and-swap on ``Job.version``: an update built
from a stale read is rejected with StaleUpdateError, so two conflicting
transitions on the same job can never both land.
"""

import threading
from typing import Any, Protocol

import asyncpg

from scrapeflow.db.queries import jobs as job_queries
from scrapeflow.db.queries import results as result_queries
from scrapeflow.models.job import Job, JobFilter, utcnow
from scrapeflow.models.result import Result
from scrapeflow.utils.errors import NotFoundError, StaleUpdateError


class JobStore(Protocol):
    async def create(self, job: Job) -> Job: ...

    async def get(self, job_id: str) -> Job | None: ...

    async def update(self, job_id: str, changes: dict[str, Any], expected_version: int) -> Job: ...

    async def list(self, filter: JobFilter) -> tuple[list[Job], int]: ...


class ResultStore(Protocol):
    async def save(self, result: Result) -> None: ...

    async def get_by_job(self, job_id: str) -> Result | None: ...


def _apply(job: Job, changes: dict[str, Any]) -> Job:
    updated = job.model_copy(
        update={**changes, "version": job.version + 1, "updated_at": utcnow()}
    )
    # model_copy skips validation; round-trip so bad patches fail loudly.
    return Job.model_validate(updated.model_dump())


class InMemoryJobStore:
    def __init__(self) -> None:
        self._jobs: dict[str, Job] = {}
        self._lock = threading.Lock()

    async def create(self, job: Job) -> Job:
        with self._lock:
            if job.id in self._jobs:
                raise StaleUpdateError(f"Job {job.id} already exists")
            self._jobs[job.id] = job
        return job

    async def get(self, job_id: str) -> Job | None:
        with self._lock:
            return self._jobs.get(job_id)

    async def update(self, job_id: str, changes: dict[str, Any], expected_version: int) -> Job:
        with self._lock:
            current = self._jobs.get(job_id)
            if current is None:
                raise NotFoundError(f"Job not found: {job_id}")
            if current.version != expected_version:
                raise StaleUpdateError(
                    f"Job {job_id} was modified concurrently",
                    details={"expected": expected_version, "actual": current.version},
                )
            updated = _apply(current, changes)
            self._jobs[job_id] = updated
            return updated

    async def list(self, filter: JobFilter) -> tuple[list[Job], int]:
        with self._lock:
            jobs = list(self._jobs.values())

        if filter.status:
            jobs = [j for j in jobs if j.status == filter.status]
        if filter.start_date:
            jobs = [j for j in jobs if j.created_at >= filter.start_date]
        if filter.end_date:
            jobs = [j for j in jobs if j.created_at <= filter.end_date]

        jobs.sort(key=lambda j: j.created_at, reverse=True)
        start = (filter.page - 1) * filter.page_size
        return jobs[start : start + filter.page_size], len(jobs)


class PgJobStore:
    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def create(self, job: Job) -> Job:
        return await job_queries.create_job(self.pool, job)

    async def get(self, job_id: str) -> Job | None:
        return await job_queries.get_job(self.pool, job_id)

    async def update(self, job_id: str, changes: dict[str, Any], expected_version: int) -> Job:
        current = await job_queries.get_job(self.pool, job_id)
        if current is None:
            raise NotFoundError(f"Job not found: {job_id}")
        if current.version != expected_version:
            raise StaleUpdateError(f"Job {job_id} was modified concurrently")
        stored = await job_queries.replace_job(
            self.pool, _apply(current, changes), expected_version
        )
        if stored is None:
            raise StaleUpdateError(f"Job {job_id} was modified concurrently")
        return stored

    async def list(self, filter: JobFilter) -> tuple[list[Job], int]:
        return await job_queries.list_jobs(self.pool, filter)


class InMemoryResultStore:
    def __init__(self) -> None:
        self._by_job: dict[str, Result] = {}

    async def save(self, result: Result) -> None:
        self._by_job[str(result.job_id)] = result

    async def get_by_job(self, job_id: str) -> Result | None:
        return self._by_job.get(job_id)


class PgResultStore:
    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def save(self, result: Result) -> None:
        await result_queries.save_result(self.pool, result)

    async def get_by_job(self, job_id: str) -> Result | None:
        return await result_queries.get_latest_result(self.pool, job_id)
