import asyncio
import gzip
import time
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any

import structlog

from scrapeflow.config.constants import PROCESSED_OBJECT_NAME, RAW_OBJECT_NAME, SCHEMA_VERSION
from scrapeflow.config.settings import Settings
from scrapeflow.models.result import (
    ProcessingStep,
    Result,
    ResultStorage,
    StepError,
    StepOperation,
    StepStatus,
    ValidationStatus,
)
from scrapeflow.services.key_management import KeyManager
from scrapeflow.services.quality import (
    QualityScorer,
    compute_checksum,
    derive_validation_status,
    parse_timestamp,
    serialize_content,
)
from scrapeflow.services.resilience import ResilientCaller
from scrapeflow.services.storage import BucketClass, ObjectStorage
from scrapeflow.services.warehouse import Warehouse
from scrapeflow.utils.errors import (
    CircuitOpenError,
    PersistenceError,
    RateLimitedError,
    ScrapeflowError,
    TransformError,
    ValidationError,
    error_code,
)

log = structlog.get_logger()

_REQUIRED_FIELDS = ("id", "job_id", "source_type", "source_url")

TransformFn = Callable[[Result], dict[str, Any]]
ActiveCheck = Callable[[], Awaitable[None]]


def default_transform(result: Result) -> dict[str, Any]:
    """Storage representation: identifying fields plus computed quality fields."""
    quality = result.metadata.quality_metrics
    assert quality is not None
    collected = parse_timestamp(result.timestamp)
    return {
        "row_id": str(result.id),
        "id": str(result.id),
        "job_id": str(result.job_id),
        "source_type": str(result.source_type),
        "source_url": str(result.source_url),
        "timestamp": collected.isoformat() if collected else str(result.timestamp),
        "content": result.content,
        "item_count": result.metadata.item_count,
        "checksum": result.metadata.checksum,
        "quality": quality.model_dump(),
        "overall_quality": quality.overall,
        "validation": str(result.metadata.validation_status),
        "schema_version": SCHEMA_VERSION,
    }


class DataPipeline:
    """Validate -> score -> transform -> persist one collection result.

    Storage side effects become authoritative only when the final stage
    attaches ``result.storage``; a run that fails or is cancelled earlier
    leaves ``storage`` unset, whatever objects were already written.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        storage: ObjectStorage,
        warehouse: Warehouse,
        key_manager: KeyManager,
        storage_caller: ResilientCaller,
        warehouse_caller: ResilientCaller,
        scorer: QualityScorer | None = None,
        transform: TransformFn = default_transform,
    ):
        self.settings = settings
        self.storage = storage
        self.warehouse = warehouse
        self.key_manager = key_manager
        self.storage_caller = storage_caller
        self.warehouse_caller = warehouse_caller
        self.scorer = scorer or QualityScorer()
        self.transform = transform

    @property
    def _gzip(self) -> bool:
        return self.settings.compression_type == "GZIP"

    def _encode(self, data: bytes) -> bytes:
        return gzip.compress(data) if self._gzip else data

    async def process(self, result: Result, ensure_active: ActiveCheck | None = None) -> Result:
        """Run every stage on ``result``, mutating it in place.

        ``ensure_active`` is awaited before each persist stage and raises
        ``asyncio.CancelledError`` once the owning job stopped running.
        """
        started = time.monotonic()
        plog = log.bind(result_id=str(result.id), job_id=str(result.job_id))

        with self._stage(plog, result, "validate", StepOperation.VALIDATE):
            self._validate(result)

        with self._stage(plog, result, "score", StepOperation.SCORE):
            self._describe(result)
            self._score(result)

        with self._stage(plog, result, "transform", StepOperation.TRANSFORM, TransformError):
            transformed = self.transform(result)

        key_ref = self.key_manager.encryption_key_ref()
        timestamp = transformed["timestamp"]
        tags = {
            "jobId": str(result.job_id),
            "sourceType": str(result.source_type),
            "timestamp": timestamp,
        }
        if self._gzip:
            tags["contentEncoding"] = "gzip"

        with self._stage(plog, result, "persist_raw", StepOperation.LOAD, PersistenceError):
            await _check(ensure_active)
            raw = result.model_dump_json(exclude={"storage"}, by_alias=True).encode()
            raw_location = await self.storage_caller.call(
                self.storage.put,
                BucketClass.RAW,
                f"{result.id}/{RAW_OBJECT_NAME}",
                self._encode(raw),
                tags,
                key_ref,
            )

        with self._stage(plog, result, "persist_processed", StepOperation.LOAD, PersistenceError):
            await _check(ensure_active)
            processed_location = await self.storage_caller.call(
                self.storage.put,
                BucketClass.PROCESSED,
                f"{result.id}/{PROCESSED_OBJECT_NAME}",
                self._encode(serialize_content(transformed)),
                {**tags, "schemaVersion": SCHEMA_VERSION},
                key_ref,
            )

        with self._stage(plog, result, "persist_warehouse", StepOperation.LOAD, PersistenceError):
            await _check(ensure_active)
            await self.warehouse_caller.call(
                self.warehouse.insert_row, self.settings.warehouse_table, transformed
            )

        result.storage = ResultStorage(
            raw_location=raw_location,
            processed_location=processed_location,
            warehouse_table=self.settings.warehouse_table,
            schema_version=SCHEMA_VERSION,
            compression_type=self.settings.compression_type,
            encryption_key_ref=key_ref,
        )
        duration_ms = int((time.monotonic() - started) * 1000)
        result.metadata.processing_history.append(
            ProcessingStep(
                operation=StepOperation.PIPELINE,
                name="finalize",
                duration_ms=duration_ms,
                status=StepStatus.SUCCESS,
            )
        )
        plog.info(
            "pipeline_completed",
            duration_ms=duration_ms,
            validation_status=str(result.metadata.validation_status),
        )
        return result

    @contextmanager
    def _stage(
        self,
        plog: Any,
        result: Result,
        name: str,
        operation: StepOperation,
        wrap: type[ScrapeflowError] | None = None,
    ) -> Iterator[None]:
        started = time.monotonic()
        plog.debug("pipeline_stage_started", stage=name)
        try:
            yield
        except asyncio.CancelledError:
            self._record_failure(
                result, name, operation, started, "CANCELLED", "Pipeline cancelled"
            )
            plog.warning("pipeline_stage_cancelled", stage=name)
            raise
        except Exception as e:
            err = _wrap(e, wrap, name)
            self._record_failure(result, name, operation, started, error_code(err), str(err))
            plog.error(
                "pipeline_stage_failed",
                stage=name,
                code=error_code(err),
                error=str(err),
                duration_ms=int((time.monotonic() - started) * 1000),
            )
            if err is e:
                raise
            raise err from e
        plog.debug(
            "pipeline_stage_completed",
            stage=name,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    def _record_failure(
        self,
        result: Result,
        name: str,
        operation: StepOperation,
        started: float,
        code: str,
        message: str,
    ) -> None:
        result.metadata.processing_history.append(
            ProcessingStep(
                operation=operation,
                name=name,
                duration_ms=int((time.monotonic() - started) * 1000),
                status=StepStatus.FAILURE,
                error=StepError(code=code, message=message),
            )
        )

    def _validate(self, result: Result) -> None:
        problems = []
        for field in _REQUIRED_FIELDS:
            value = getattr(result, field)
            if not isinstance(value, str) or not value.strip():
                problems.append(f"{field} must be a non-empty string")
        if not _is_datetime(result.timestamp):
            problems.append("timestamp must be a valid date-time")
        if problems:
            raise ValidationError(
                f"Schema validation failed: {', '.join(problems)}",
                details={"problems": problems},
            )

    def _score(self, result: Result) -> None:
        metrics = self.scorer.score(result)
        result.metadata.quality_metrics = metrics
        result.metadata.validation_status = derive_validation_status(metrics)
        if result.metadata.validation_status != ValidationStatus.VALID:
            result.metadata.processing_history.append(
                ProcessingStep(
                    operation=StepOperation.SCORE,
                    name="score",
                    status=StepStatus.WARNING,
                    error=StepError(
                        code="LOW_QUALITY",
                        message=f"Overall quality {metrics.overall:.1f}",
                    ),
                )
            )

    def _describe(self, result: Result) -> None:
        meta = result.metadata
        body = serialize_content(result.content)
        meta.size = len(body)
        content = result.content
        meta.item_count = len(content) if isinstance(content, list) else int(content is not None)
        if not meta.checksum:
            meta.checksum = compute_checksum(content)


def _is_datetime(value: Any) -> bool:
    if isinstance(value, datetime):
        return True
    if not isinstance(value, str) or "T" not in value:
        return False
    return parse_timestamp(value) is not None


def _wrap(
    exc: Exception, wrap: type[ScrapeflowError] | None, stage: str
) -> ScrapeflowError | Exception:
    if wrap is None or isinstance(exc, (wrap, CircuitOpenError, RateLimitedError)):
        return exc
    return wrap(f"{stage} failed: {exc}", details={"cause": error_code(exc)})


async def _check(ensure_active: ActiveCheck | None) -> None:
    if ensure_active is not None:
        await ensure_active()
