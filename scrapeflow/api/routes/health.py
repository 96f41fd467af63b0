import structlog
from arq.connections import RedisSettings
from arq.connections import create_pool as create_arq_pool
from fastapi import APIRouter, Depends

from scrapeflow.api.deps import get_service
from scrapeflow.config.settings import get_settings
from scrapeflow.db.pool import get_pool
from scrapeflow.models.api import HealthResponse
from scrapeflow.services.scraping_service import ScrapingService

log = structlog.get_logger()

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health(service: ScrapingService = Depends(get_service)) -> HealthResponse:
    db_status = "disconnected"
    redis_status = "disconnected"
    settings = get_settings()

    try:
        pool = await get_pool()
        if await pool.fetchval("SELECT 1") == 1:
            db_status = "connected"
    except Exception as e:
        log.warning("health_database_unreachable", error=str(e))

    try:
        redis = await create_arq_pool(RedisSettings.from_dsn(settings.redis_url))
        await redis.ping()
        redis_status = "connected"
        await redis.aclose()
    except Exception as e:
        log.warning("health_redis_unreachable", error=str(e))

    breakers = [
        service.guard.breaker.stats(),
        service.jobs.collector_breaker.stats(),
        service.jobs.pipeline.storage_caller.breaker.stats(),
        service.jobs.pipeline.warehouse_caller.breaker.stats(),
        service.scheduler.caller.breaker.stats(),
    ]
    status = "ok" if db_status == "connected" else "degraded"
    return HealthResponse(
        status=status, database=db_status, redis=redis_status, breakers=breakers
    )
