from arq.connections import RedisSettings

from scrapeflow.config.settings import get_settings
from scrapeflow.queue.jobs import handle_schedule_trigger, process_scrape_job


async def startup(ctx: dict) -> None:
    from scrapeflow.db.pool import get_pool
    from scrapeflow.services.factory import create_scraping_service
    from scrapeflow.utils.logger import setup_logging

    setup_logging()
    ctx["pool"] = await get_pool()
    ctx["service"] = create_scraping_service(get_settings(), pool=ctx["pool"])


async def shutdown(ctx: dict) -> None:
    from scrapeflow.db.pool import close_pool

    await close_pool()


class WorkerSettings:
    functions = [process_scrape_job, handle_schedule_trigger]
    on_startup = startup
    on_shutdown = shutdown

    _settings = get_settings()
    redis_settings = RedisSettings.from_dsn(_settings.redis_url)
    max_jobs = _settings.max_concurrent_jobs
    job_timeout = _settings.job_timeout_s
