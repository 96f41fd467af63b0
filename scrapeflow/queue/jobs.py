import structlog
from arq.connections import RedisSettings
from arq.connections import create_pool as create_arq_pool

from scrapeflow.config.constants import QUEUE_NAMES
from scrapeflow.config.settings import get_settings

log = structlog.get_logger()


async def enqueue(function: str, *, job_id: str) -> str | None:
    """Push a job execution onto the arq queue. Returns the arq job id."""
    settings = get_settings()
    redis = await create_arq_pool(RedisSettings.from_dsn(settings.redis_url))
    try:
        queued = await redis.enqueue_job(function, job_id=job_id)
    finally:
        await redis.aclose()
    log.info("job_enqueued", function=function, job_id=job_id)
    return queued.job_id if queued is not None else None


async def enqueue_scrape_job(job_id: str) -> str | None:
    return await enqueue(QUEUE_NAMES["scrape_job"], job_id=job_id)


async def enqueue_schedule_trigger(job_id: str) -> str | None:
    return await enqueue(QUEUE_NAMES["schedule_trigger"], job_id=job_id)


async def process_scrape_job(ctx: dict, *, job_id: str) -> dict:
    """Run an on-demand job to a terminal state."""
    service = ctx["service"]
    log.info("worker_job_received", job_id=job_id)
    job = await service.execute_job(job_id)
    return {"job_id": job.id, "status": str(job.status)}


async def handle_schedule_trigger(ctx: dict, *, job_id: str) -> dict:
    """Run one delivery of a recurring trigger.

    The API process already matched the delivery against its schedule
    registry. Repeated deliveries for a job that has moved on are skipped by
    the job manager.
    """
    service = ctx["service"]
    log.info("worker_trigger_received", job_id=job_id)
    job = await service.execute_job(job_id)
    return {"job_id": job.id, "status": str(job.status)}
