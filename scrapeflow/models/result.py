from datetime import datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from scrapeflow.models.job import SourceType, utcnow


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ValidationStatus(StrEnum):
    VALID = "VALID"
    PARTIAL = "PARTIAL"
    INVALID = "INVALID"


class StepOperation(StrEnum):
    EXTRACT = "EXTRACT"
    VALIDATE = "VALIDATE"
    SCORE = "SCORE"
    TRANSFORM = "TRANSFORM"
    LOAD = "LOAD"
    PIPELINE = "PIPELINE"


class StepStatus(StrEnum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    WARNING = "WARNING"


class StepError(_CamelModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class ProcessingStep(_CamelModel):
    step_id: str = Field(default_factory=lambda: str(uuid4()))
    operation: StepOperation
    name: str = ""
    timestamp: datetime = Field(default_factory=utcnow)
    duration_ms: int = 0
    status: StepStatus
    error: StepError | None = None


class QualityMetrics(_CamelModel):
    completeness: float = Field(default=0.0, ge=0, le=100)
    accuracy: float = Field(default=0.0, ge=0, le=100)
    consistency: float = Field(default=0.0, ge=0, le=100)
    freshness: float = Field(default=0.0, ge=0, le=100)

    @property
    def overall(self) -> float:
        return (self.completeness + self.accuracy + self.consistency + self.freshness) / 4


class StorageLocation(_CamelModel):
    bucket: str
    path: str
    uri: str
    size: int = 0
    encryption_key_ref: str | None = None


class ResultStorage(_CamelModel):
    raw_location: StorageLocation
    processed_location: StorageLocation
    warehouse_table: str
    schema_version: str
    compression_type: str
    encryption_key_ref: str


class ResultMetadata(_CamelModel):
    size: int = 0
    item_count: int = 0
    format: str = "json"
    content_type: str = "application/json"
    checksum: str = ""
    validation_status: ValidationStatus | None = None
    quality_metrics: QualityMetrics | None = None
    processing_history: list[ProcessingStep] = Field(default_factory=list)


class Result(_CamelModel):
    """Output of one collection run as it moves through the data pipeline.

    ``timestamp`` stays loosely typed on purpose: results arrive from
    collection strategies and are checked by the pipeline's validate stage.
    """

    id: Any = None
    job_id: Any = None
    source_type: Any = None
    source_url: Any = None
    timestamp: Any = None
    content: Any = None
    storage: ResultStorage | None = None
    metadata: ResultMetadata = Field(default_factory=ResultMetadata)

    @classmethod
    def new(
        cls,
        *,
        job_id: str,
        source_type: SourceType,
        source_url: str,
        content: Any,
        content_type: str = "application/json",
        timestamp: datetime | None = None,
    ) -> "Result":
        return cls(
            id=str(uuid4()),
            job_id=job_id,
            source_type=str(source_type),
            source_url=source_url,
            timestamp=timestamp or utcnow(),
            content=content,
            metadata=ResultMetadata(content_type=content_type),
        )
