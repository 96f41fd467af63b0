from datetime import datetime

from pydantic import BaseModel, Field

from scrapeflow.config.constants import DEFAULT_SCHEDULER_RETRY
from scrapeflow.models.job import utcnow


class RetryPolicy(BaseModel):
    max_attempts: int = Field(default=3, ge=1)
    initial_delay_ms: int = Field(default=1_000, ge=0)
    max_delay_ms: int = Field(default=30_000, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)

    @classmethod
    def scheduler_default(cls) -> "RetryPolicy":
        return cls(**DEFAULT_SCHEDULER_RETRY)


class ScheduleMetadata(BaseModel):
    job_id: str
    schedule_id: str
    cron_expression: str
    timezone: str
    retry_policy: RetryPolicy
    callback_target: str = ""
    registered_at: datetime = Field(default_factory=utcnow)
