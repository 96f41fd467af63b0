from datetime import UTC, datetime
from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from scrapeflow.config.constants import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE


def utcnow() -> datetime:
    return datetime.now(UTC)


class _CamelModel(BaseModel):
    # Accept both the snake_case field names and the camelCase payload keys.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class _FrozenCamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class JobStatus(StrEnum):
    PENDING = "PENDING"
    SCHEDULED = "SCHEDULED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class SourceType(StrEnum):
    WEBSITE = "WEBSITE"
    API = "API"
    DOCUMENT = "DOCUMENT"


class AuthType(StrEnum):
    NONE = "NONE"
    BASIC = "BASIC"
    TOKEN = "TOKEN"
    OAUTH = "OAUTH"


class ErrorCategory(StrEnum):
    NETWORK = "NETWORK"
    TIMEOUT = "TIMEOUT"
    VALIDATION = "VALIDATION"
    AUTHENTICATION = "AUTH"
    RATE_LIMIT = "RATE_LIMIT"
    SYSTEM = "SYSTEM"


class SelectorConfig(_FrozenCamelModel):
    selector: str = Field(min_length=1, max_length=1000)
    type: Literal["css", "xpath"] = "css"
    required: bool = False


class AuthConfig(_FrozenCamelModel):
    type: AuthType = AuthType.NONE
    # Reference into a secret manager, never the credential itself.
    credentials_ref: str | None = None
    headers: dict[str, str] = {}


class SourceConfig(_FrozenCamelModel):
    url: str = ""
    type: SourceType = SourceType.WEBSITE
    selectors: dict[str, SelectorConfig] = {}
    authentication: AuthConfig | None = None


class ScheduleConfig(_FrozenCamelModel):
    enabled: bool = False
    cron_expression: str | None = None
    timezone: str | None = None
    min_interval_s: int | None = Field(default=None, ge=0)
    max_frequency: int | None = Field(default=None, gt=0)


class RateLimitConfig(_FrozenCamelModel):
    requests: int = 60
    period: int = 60_000


class OptionsConfig(_FrozenCamelModel):
    retry_attempts: int = 3
    retry_delay: int = 5_000
    timeout: int = 30_000
    user_agent: str = "scrapeflow/0.1"
    rate_limit: RateLimitConfig = RateLimitConfig()


class ScrapingConfig(_FrozenCamelModel):
    """Immutable snapshot of collection parameters attached to a Job."""

    source: SourceConfig
    schedule: ScheduleConfig = ScheduleConfig()
    options: OptionsConfig = OptionsConfig()


class JobMetrics(_CamelModel):
    request_count: int = 0
    bytes_processed: int = 0
    items_scraped: int = 0
    error_count: int = 0
    avg_response_time_ms: float = 0.0
    success_rate: float = 0.0
    retry_rate: float = 0.0


class JobError(_CamelModel):
    code: str
    category: ErrorCategory = ErrorCategory.SYSTEM
    message: str
    retryable: bool = False
    timestamp: datetime = Field(default_factory=utcnow)


class ExecutionDetails(_CamelModel):
    start_time: datetime | None = None
    end_time: datetime | None = None
    duration_ms: int = 0
    attempts: int = 0
    progress: int = Field(default=0, ge=0, le=100)
    last_checkpoint: str = ""
    metrics: JobMetrics = JobMetrics()


class Job(_CamelModel):
    id: str
    config: ScrapingConfig
    status: JobStatus
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    execution_details: ExecutionDetails = ExecutionDetails()
    retry_count: int = Field(default=0, ge=0)
    last_retry_at: datetime | None = None
    error: JobError | None = None
    version: int = 1


class JobFilter(_CamelModel):
    status: JobStatus | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE)

    @field_validator("start_date", "end_date", mode="after")
    @classmethod
    def assume_utc(cls, value: datetime | None) -> datetime | None:
        # Job timestamps are stored in UTC; naive bounds are read the same way.
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    @model_validator(mode="after")
    def check_date_range(self) -> "JobFilter":
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValueError("start_date must not be after end_date")
        return self


class JobPage(_CamelModel):
    jobs: list[Job]
    total: int
    page: int
    page_size: int
