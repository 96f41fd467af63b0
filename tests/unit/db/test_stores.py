import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest

from scrapeflow.db.stores import InMemoryJobStore, PgJobStore
from scrapeflow.models.job import Job, JobFilter, JobStatus, ScrapingConfig
from scrapeflow.utils.errors import NotFoundError, StaleUpdateError

CONFIG = ScrapingConfig.model_validate({"source": {"url": "https://example.com"}})


def make_job(job_id: str, status=JobStatus.PENDING, created_at=None) -> Job:
    job = Job(id=job_id, config=CONFIG, status=status)
    if created_at is not None:
        job = job.model_copy(update={"created_at": created_at})
    return job


class TestInMemoryJobStore:
    @pytest.mark.asyncio
    async def test_update_bumps_version(self):
        store = InMemoryJobStore()
        await store.create(make_job("a"))

        updated = await store.update("a", {"status": JobStatus.RUNNING}, expected_version=1)

        assert updated.version == 2
        assert updated.status == JobStatus.RUNNING

    @pytest.mark.asyncio
    async def test_stale_update_is_rejected(self):
        store = InMemoryJobStore()
        await store.create(make_job("a"))
        await store.update("a", {"status": JobStatus.RUNNING}, expected_version=1)

        with pytest.raises(StaleUpdateError):
            await store.update("a", {"status": JobStatus.CANCELLED}, expected_version=1)

        assert (await store.get("a")).status == JobStatus.RUNNING

    @pytest.mark.asyncio
    async def test_concurrent_conflicting_updates_only_one_lands(self):
        store = InMemoryJobStore()
        await store.create(make_job("a", JobStatus.RUNNING))

        outcomes = await asyncio.gather(
            store.update("a", {"status": JobStatus.COMPLETED}, expected_version=1),
            store.update("a", {"status": JobStatus.CANCELLED}, expected_version=1),
            return_exceptions=True,
        )

        assert sum(isinstance(o, Job) for o in outcomes) == 1
        assert sum(isinstance(o, StaleUpdateError) for o in outcomes) == 1

    @pytest.mark.asyncio
    async def test_update_unknown_job(self):
        with pytest.raises(NotFoundError):
            await InMemoryJobStore().update("missing", {}, expected_version=1)

    @pytest.mark.asyncio
    async def test_duplicate_create_is_rejected(self):
        store = InMemoryJobStore()
        await store.create(make_job("a"))
        with pytest.raises(StaleUpdateError):
            await store.create(make_job("a"))

    @pytest.mark.asyncio
    async def test_list_filters_sorts_and_paginates(self):
        store = InMemoryJobStore()
        base = datetime(2024, 1, 1, tzinfo=UTC)
        for i in range(5):
            status = JobStatus.COMPLETED if i % 2 else JobStatus.PENDING
            await store.create(make_job(f"j{i}", status, base + timedelta(days=i)))

        jobs, total = await store.list(JobFilter(page=1, page_size=2))
        assert total == 5
        assert [j.id for j in jobs] == ["j4", "j3"]

        jobs, total = await store.list(JobFilter(page=3, page_size=2))
        assert [j.id for j in jobs] == ["j0"]

        jobs, total = await store.list(JobFilter(status=JobStatus.COMPLETED))
        assert total == 2
        assert {j.id for j in jobs} == {"j1", "j3"}

        jobs, total = await store.list(
            JobFilter(start_date=base + timedelta(days=1), end_date=base + timedelta(days=2))
        )
        assert {j.id for j in jobs} == {"j1", "j2"}


class TestPgJobStore:
    @pytest.mark.asyncio
    async def test_lost_race_in_database_is_stale(self):
        store = PgJobStore(pool=AsyncMock())
        current = make_job("a")
        with (
            patch("scrapeflow.db.queries.jobs.get_job", AsyncMock(return_value=current)),
            patch("scrapeflow.db.queries.jobs.replace_job", AsyncMock(return_value=None)),
        ):
            with pytest.raises(StaleUpdateError):
                await store.update("a", {"status": JobStatus.RUNNING}, expected_version=1)

    @pytest.mark.asyncio
    async def test_passes_expected_version_to_conditional_write(self):
        store = PgJobStore(pool=AsyncMock())
        current = make_job("a")
        replace = AsyncMock(side_effect=lambda pool, job, expected: job)
        with (
            patch("scrapeflow.db.queries.jobs.get_job", AsyncMock(return_value=current)),
            patch("scrapeflow.db.queries.jobs.replace_job", replace),
        ):
            stored = await store.update("a", {"status": JobStatus.RUNNING}, expected_version=1)

        assert stored.version == 2
        assert replace.await_args.args[2] == 1
