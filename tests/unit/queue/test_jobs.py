from unittest.mock import AsyncMock, patch

import pytest

from scrapeflow.models.job import JobStatus
from scrapeflow.queue.jobs import enqueue_scrape_job, handle_schedule_trigger, process_scrape_job


class TestWorkerFunctions:
    @pytest.mark.asyncio
    async def test_process_scrape_job_runs_the_job(self, service, website_config):
        job = await service.start_job(website_config)

        outcome = await process_scrape_job({"service": service}, job_id=job.id)

        assert outcome == {"job_id": job.id, "status": "COMPLETED"}

    @pytest.mark.asyncio
    async def test_trigger_for_finished_job_is_a_no_op(self, service, collector, website_config):
        job = await service.start_job(website_config)
        await service.execute_job(job.id)

        outcome = await handle_schedule_trigger({"service": service}, job_id=job.id)

        assert outcome["status"] == str(JobStatus.COMPLETED)
        assert collector.calls == 1


class TestEnqueue:
    @pytest.mark.asyncio
    async def test_enqueues_by_function_name(self):
        redis = AsyncMock()
        redis.enqueue_job.return_value.job_id = "arq-1"
        with patch("scrapeflow.queue.jobs.create_arq_pool", AsyncMock(return_value=redis)):
            queued = await enqueue_scrape_job("job-1")

        assert queued == "arq-1"
        redis.enqueue_job.assert_awaited_once_with("process_scrape_job", job_id="job-1")
        redis.aclose.assert_awaited_once()
