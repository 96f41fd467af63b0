import asyncpg

from scrapeflow.config.settings import Settings, get_settings
from scrapeflow.db.stores import (
    InMemoryJobStore,
    InMemoryResultStore,
    PgJobStore,
    PgResultStore,
)
from scrapeflow.scraping.collector import CollectionStrategy, HttpCollector
from scrapeflow.services.data_pipeline import DataPipeline
from scrapeflow.services.job_manager import JobManager
from scrapeflow.services.job_scheduler import JobExecutor, JobScheduler
from scrapeflow.services.key_management import KeyManager, StaticKeyManager
from scrapeflow.services.quality import QualityScorer
from scrapeflow.services.resilience import ResilientCaller
from scrapeflow.services.schedule_registry import InMemoryScheduleRegistry, ScheduleRegistry
from scrapeflow.services.scheduler_backend import InMemorySchedulerBackend, SchedulerBackend
from scrapeflow.services.scraping_service import ScrapingService
from scrapeflow.services.storage import LocalObjectStorage, ObjectStorage
from scrapeflow.services.warehouse import InMemoryWarehouse, PgWarehouse, Warehouse


def create_scraping_service(
    settings: Settings | None = None,
    *,
    pool: asyncpg.Pool | None = None,
    backend: SchedulerBackend | None = None,
    registry: ScheduleRegistry | None = None,
    storage: ObjectStorage | None = None,
    warehouse: Warehouse | None = None,
    key_manager: KeyManager | None = None,
    collector: CollectionStrategy | None = None,
    scorer: QualityScorer | None = None,
    execute: JobExecutor | None = None,
) -> ScrapingService:
    """Wire a ScrapingService with one resilient caller per dependency.

    With a pool, jobs, results and warehouse rows live in Postgres; without
    one everything stays in memory. ``execute`` decides what a scheduler
    trigger does and defaults to running the job in this process.
    """
    settings = settings or get_settings()

    if pool is not None:
        job_store = PgJobStore(pool)
        result_store = PgResultStore(pool)
        warehouse = warehouse or PgWarehouse(pool)
    else:
        job_store = InMemoryJobStore()
        result_store = InMemoryResultStore()
        warehouse = warehouse or InMemoryWarehouse()

    pipeline = DataPipeline(
        settings=settings,
        storage=storage or LocalObjectStorage(settings),
        warehouse=warehouse,
        key_manager=key_manager or StaticKeyManager(settings.kms_key_name),
        storage_caller=ResilientCaller.for_dependency("object-storage", settings),
        warehouse_caller=ResilientCaller.for_dependency("warehouse", settings),
        scorer=scorer,
    )
    jobs = JobManager(
        settings=settings,
        store=job_store,
        result_store=result_store,
        pipeline=pipeline,
        collector=collector or HttpCollector(),
    )

    service: ScrapingService | None = None

    async def run_in_process(job_id: str) -> object:
        assert service is not None
        return await service.execute_job(job_id)

    scheduler = JobScheduler(
        settings=settings,
        backend=backend or InMemorySchedulerBackend(),
        registry=registry or InMemoryScheduleRegistry(),
        caller=ResilientCaller.for_dependency("scheduler", settings),
        execute=execute or run_in_process,
    )
    service = ScrapingService(
        settings=settings, jobs=jobs, results=result_store, scheduler=scheduler
    )
    return service
