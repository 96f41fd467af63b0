from typing import Any

from fastapi import APIRouter, Body, Depends, Request

from scrapeflow.api.deps import get_dispatch, get_service
from scrapeflow.models.api import ExecuteJobResponse
from scrapeflow.models.job import Job, JobPage, JobStatus
from scrapeflow.models.result import Result
from scrapeflow.services.job_scheduler import JobExecutor
from scrapeflow.services.scraping_service import ScrapingService

router = APIRouter(prefix="/jobs")


@router.post("", status_code=201, response_model=Job)
async def start_job(
    config: dict[str, Any] = Body(...),
    service: ScrapingService = Depends(get_service),
    dispatch: JobExecutor = Depends(get_dispatch),
) -> Job:
    job = await service.start_job(config)
    # Scheduled jobs wait for their trigger.
    if job.status == JobStatus.PENDING:
        await dispatch(job.id)
    return job


@router.get("", response_model=JobPage)
async def list_jobs(request: Request, service: ScrapingService = Depends(get_service)) -> JobPage:
    return await service.list_jobs(dict(request.query_params))


@router.get("/{job_id}", response_model=Job)
async def get_job(job_id: str, service: ScrapingService = Depends(get_service)) -> Job:
    return await service.get_job(job_id)


@router.post("/{job_id}/stop", response_model=Job)
async def stop_job(job_id: str, service: ScrapingService = Depends(get_service)) -> Job:
    return await service.stop_job(job_id)


@router.get("/{job_id}/result", response_model=Result)
async def get_job_result(job_id: str, service: ScrapingService = Depends(get_service)) -> Result:
    return await service.get_job_result(job_id)


@router.post("/{job_id}/execute", status_code=202, response_model=ExecuteJobResponse)
async def execute_job(
    job_id: str, service: ScrapingService = Depends(get_service)
) -> ExecuteJobResponse:
    """Callback target of the external scheduler."""
    await service.handle_trigger(job_id)
    job = await service.get_job(job_id)
    return ExecuteJobResponse(
        job_id=job_id, status=str(job.status), message="Trigger accepted"
    )
