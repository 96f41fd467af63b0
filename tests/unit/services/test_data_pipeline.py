import asyncio
import gzip
import json
from unittest.mock import AsyncMock

import pytest

from scrapeflow.models.result import Result, StepStatus, ValidationStatus
from scrapeflow.services.circuit_breaker import CircuitBreaker
from scrapeflow.services.data_pipeline import DataPipeline
from scrapeflow.services.key_management import StaticKeyManager
from scrapeflow.services.quality import QualityScorer
from scrapeflow.services.resilience import ResilientCaller
from scrapeflow.services.storage import BucketClass
from scrapeflow.utils.errors import (
    CircuitOpenError,
    PersistenceError,
    TransformError,
    TransientError,
    ValidationError,
)


def make_result(**overrides) -> Result:
    result = Result.new(
        job_id="job-1",
        source_type="WEBSITE",
        source_url="https://example.com",
        content=[{"title": "a", "price": "1"}, {"title": "b", "price": "2"}],
    )
    return result.model_copy(update=overrides)


@pytest.fixture
def pipeline(settings, storage, warehouse) -> DataPipeline:
    return DataPipeline(
        settings=settings,
        storage=storage,
        warehouse=warehouse,
        key_manager=StaticKeyManager("kms/test-key"),
        storage_caller=ResilientCaller.for_dependency("object-storage", settings),
        warehouse_caller=ResilientCaller.for_dependency("warehouse", settings),
    )


def failures(result: Result) -> list[str]:
    return [
        step.name
        for step in result.metadata.processing_history
        if step.status == StepStatus.FAILURE
    ]


class TestDataPipeline:
    @pytest.mark.asyncio
    async def test_successful_run_populates_storage_and_metadata(
        self, pipeline, storage, warehouse, settings
    ):
        result = make_result()

        await pipeline.process(result)

        assert result.metadata.validation_status == ValidationStatus.VALID
        assert result.metadata.quality_metrics.overall == 100.0
        assert result.metadata.item_count == 2
        assert len(result.metadata.checksum) == 64
        assert result.metadata.size > 0

        assert result.storage is not None
        assert result.storage.raw_location.path == f"{result.id}/raw.json"
        assert result.storage.processed_location.path == f"{result.id}/processed.json"
        assert result.storage.schema_version == "1.0.0"
        assert result.storage.compression_type == "GZIP"
        assert result.storage.encryption_key_ref == "kms/test-key"
        assert result.storage.warehouse_table == settings.warehouse_table

        raw_bytes, raw_tags = storage.objects[(settings.raw_bucket, f"{result.id}/raw.json")]
        assert json.loads(gzip.decompress(raw_bytes))["jobId"] == "job-1"
        assert raw_tags["jobId"] == "job-1"
        assert raw_tags["contentEncoding"] == "gzip"
        _, processed_tags = storage.objects[
            (settings.processed_bucket, f"{result.id}/processed.json")
        ]
        assert processed_tags["schemaVersion"] == "1.0.0"

        rows = warehouse.rows(settings.warehouse_table)
        assert len(rows) == 1
        assert rows[0]["row_id"] == result.id
        assert rows[0]["validation"] == "VALID"

        last = result.metadata.processing_history[-1]
        assert last.status == StepStatus.SUCCESS
        assert last.name == "finalize"

    @pytest.mark.asyncio
    async def test_schema_failure_is_recorded_and_nothing_persisted(self, pipeline, storage):
        result = make_result(source_url="")

        with pytest.raises(ValidationError):
            await pipeline.process(result)

        assert failures(result) == ["validate"]
        assert result.metadata.processing_history[0].error.code == "VALIDATION_ERROR"
        assert result.storage is None
        assert storage.objects == {}

    @pytest.mark.asyncio
    async def test_timestamp_must_be_a_date_time(self, pipeline):
        result = make_result(timestamp="2024-01-01")

        with pytest.raises(ValidationError):
            await pipeline.process(result)

    @pytest.mark.asyncio
    async def test_low_quality_is_a_warning_not_a_failure(self, pipeline):
        pipeline.scorer = QualityScorer(
            completeness=lambda r: 60,
            accuracy=lambda r: 60,
            consistency=lambda r: 60,
            freshness=lambda r: 60,
        )
        result = make_result()

        await pipeline.process(result)

        assert result.metadata.validation_status == ValidationStatus.PARTIAL
        warnings = [
            s for s in result.metadata.processing_history if s.status == StepStatus.WARNING
        ]
        assert warnings[0].error.code == "LOW_QUALITY"
        assert result.storage is not None

    @pytest.mark.asyncio
    async def test_transform_errors_are_wrapped(self, pipeline, warehouse, settings):
        def broken(result):
            raise KeyError("missing")

        pipeline.transform = broken
        result = make_result()

        with pytest.raises(TransformError):
            await pipeline.process(result)

        assert failures(result) == ["transform"]
        assert result.metadata.processing_history[-1].error.code == "TRANSFORM_ERROR"
        assert warehouse.rows(settings.warehouse_table) == []

    @pytest.mark.asyncio
    async def test_storage_failure_after_retries_becomes_persistence_error(
        self, pipeline, storage
    ):
        storage.put = AsyncMock(side_effect=TransientError("bucket unavailable"))
        result = make_result()

        with pytest.raises(PersistenceError):
            await pipeline.process(result)

        assert storage.put.await_count == 3
        assert failures(result) == ["persist_raw"]
        assert result.storage is None

    @pytest.mark.asyncio
    async def test_open_circuit_is_surfaced_unwrapped(self, pipeline, settings, clock):
        breaker = CircuitBreaker("warehouse", min_requests=1, clock=clock)
        pipeline.warehouse_caller = ResilientCaller("warehouse", breaker=breaker)
        pipeline.warehouse.insert_row = AsyncMock(side_effect=TransientError("down"))

        with pytest.raises(PersistenceError):
            await pipeline.process(make_result())

        result = make_result()
        with pytest.raises(CircuitOpenError):
            await pipeline.process(result)
        assert failures(result) == ["persist_warehouse"]
        assert result.storage is None

    @pytest.mark.asyncio
    async def test_warehouse_replay_with_same_id_keeps_one_row(
        self, pipeline, warehouse, settings
    ):
        result = make_result()
        replay = result.model_copy(deep=True)

        await pipeline.process(result)
        await pipeline.process(replay)

        assert warehouse.insert_calls == 2
        rows = warehouse.rows(settings.warehouse_table)
        assert [row["row_id"] for row in rows] == [result.id]

    @pytest.mark.asyncio
    async def test_cancellation_records_failure_and_leaves_storage_unset(
        self, pipeline, storage
    ):
        started = asyncio.Event()

        async def slow_insert(table, row):
            started.set()
            await asyncio.sleep(10)

        pipeline.warehouse.insert_row = slow_insert
        result = make_result()
        task = asyncio.create_task(pipeline.process(result))
        await started.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert result.storage is None
        assert failures(result) == ["persist_warehouse"]
        assert result.metadata.processing_history[-1].error.code == "CANCELLED"
        # Objects written before cancellation are orphaned, not rolled back.
        assert len(storage.objects) == 2

    @pytest.mark.asyncio
    async def test_storage_puts_target_both_bucket_classes(self, pipeline):
        calls = []
        original = pipeline.storage.put

        async def spy(bucket_class, path, data, metadata, encryption_key_ref=None):
            calls.append(bucket_class)
            return await original(bucket_class, path, data, metadata, encryption_key_ref)

        pipeline.storage.put = spy
        await pipeline.process(make_result())

        assert calls == [BucketClass.RAW, BucketClass.PROCESSED]

    @pytest.mark.asyncio
    async def test_scoring_sees_described_metadata(self, pipeline):
        seen = {}

        def accuracy(result):
            seen["checksum"] = result.metadata.checksum
            seen["item_count"] = result.metadata.item_count
            return 100

        pipeline.scorer = QualityScorer(accuracy=accuracy)
        result = make_result()

        await pipeline.process(result)

        assert len(seen["checksum"]) == 64
        assert seen["item_count"] == 2

    @pytest.mark.asyncio
    async def test_uncompressed_objects_when_compression_disabled(
        self, pipeline, storage, settings
    ):
        pipeline.settings = settings.model_copy(update={"compression_type": "NONE"})
        result = make_result()

        await pipeline.process(result)

        raw_bytes, raw_tags = storage.objects[(settings.raw_bucket, f"{result.id}/raw.json")]
        assert json.loads(raw_bytes)["jobId"] == "job-1"
        assert "contentEncoding" not in raw_tags
        assert result.storage.compression_type == "NONE"

    @pytest.mark.asyncio
    async def test_inactive_job_stops_before_first_write(self, pipeline, storage, warehouse):
        async def stopped():
            raise asyncio.CancelledError("job stopped")

        result = make_result()

        with pytest.raises(asyncio.CancelledError):
            await pipeline.process(result, ensure_active=stopped)

        assert storage.objects == {}
        assert failures(result) == ["persist_raw"]
        assert result.metadata.processing_history[-1].error.code == "CANCELLED"
        assert result.storage is None
