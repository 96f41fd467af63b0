from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import urlparse
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import pydantic
from apscheduler.triggers.cron import CronTrigger

from scrapeflow.config.constants import (
    RATE_LIMIT_PERIOD_MAX_MS,
    RATE_LIMIT_PERIOD_MIN_MS,
    RATE_LIMIT_REQUESTS_MAX,
    RATE_LIMIT_REQUESTS_MIN,
    RETRY_ATTEMPTS_MAX,
    RETRY_DELAY_MAX_MS,
    TIMEOUT_MAX_MS,
    TIMEOUT_MIN_MS,
    URL_MAX_LENGTH,
)
from scrapeflow.models.job import ScheduleConfig, ScrapingConfig
from scrapeflow.utils.errors import ValidationError

_MAX_FIRE_SCAN = 1441


def parse_scraping_config(data: ScrapingConfig | dict[str, Any]) -> ScrapingConfig:
    """Build a ScrapingConfig from a payload, surfacing model errors as ValidationError."""
    if isinstance(data, ScrapingConfig):
        return data
    try:
        return ScrapingConfig.model_validate(data)
    except pydantic.ValidationError as e:
        raise ValidationError(
            "Invalid scraping configuration",
            details={"errors": e.errors(include_url=False, include_context=False)},
        ) from e


def validate_url(url: str) -> None:
    if not url:
        raise ValidationError("Source URL is required")
    if len(url) > URL_MAX_LENGTH:
        raise ValidationError(f"Source URL longer than {URL_MAX_LENGTH} characters")
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError("Source URL must use the HTTP or HTTPS protocol")


def build_trigger(schedule: ScheduleConfig) -> CronTrigger:
    """Parse the cron expression in its timezone, or raise ValidationError."""
    if not schedule.cron_expression:
        raise ValidationError("Cron expression is required for an enabled schedule")
    if not schedule.timezone:
        raise ValidationError("Timezone is required for an enabled schedule")
    try:
        tz = ZoneInfo(schedule.timezone)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValidationError(f"Unknown timezone: {schedule.timezone}") from e
    try:
        return CronTrigger.from_crontab(schedule.cron_expression, timezone=tz)
    except ValueError as e:
        raise ValidationError(f"Invalid cron expression: {e}") from e


def _fires_within_day(trigger: CronTrigger, start: datetime) -> list[datetime]:
    fires: list[datetime] = []
    horizon = start + timedelta(days=1)
    current = trigger.get_next_fire_time(None, start)
    while current is not None and current < horizon and len(fires) < _MAX_FIRE_SCAN:
        fires.append(current)
        current = trigger.get_next_fire_time(None, current + timedelta(seconds=1))
    return fires


def validate_schedule(schedule: ScheduleConfig, now: datetime | None = None) -> CronTrigger:
    if not schedule.enabled:
        raise ValidationError("Schedule is not enabled")
    trigger = build_trigger(schedule)

    if schedule.min_interval_s is None and schedule.max_frequency is None:
        return trigger

    fires = _fires_within_day(trigger, now or datetime.now(UTC))
    if schedule.max_frequency is not None and len(fires) > schedule.max_frequency:
        raise ValidationError(
            f"Schedule fires {len(fires)} times a day, "
            f"more than the allowed {schedule.max_frequency}"
        )
    if schedule.min_interval_s is not None and len(fires) > 1:
        gap = min((b - a).total_seconds() for a, b in zip(fires, fires[1:]))
        if gap < schedule.min_interval_s:
            raise ValidationError(
                f"Schedule fires every {int(gap)}s, "
                f"below the minimum interval of {schedule.min_interval_s}s"
            )
    return trigger


def validate_scraping_config(config: ScrapingConfig) -> None:
    """Check a configuration against source, option and schedule policy."""
    validate_url(config.source.url)

    options = config.options
    if not 0 <= options.retry_attempts <= RETRY_ATTEMPTS_MAX:
        raise ValidationError(f"Invalid retry attempts range (0-{RETRY_ATTEMPTS_MAX})")
    if not 0 <= options.retry_delay <= RETRY_DELAY_MAX_MS:
        raise ValidationError(f"Invalid retry delay range (0-{RETRY_DELAY_MAX_MS}ms)")
    if not TIMEOUT_MIN_MS <= options.timeout <= TIMEOUT_MAX_MS:
        raise ValidationError(f"Invalid timeout range ({TIMEOUT_MIN_MS}-{TIMEOUT_MAX_MS}ms)")

    rate = options.rate_limit
    if not RATE_LIMIT_REQUESTS_MIN <= rate.requests <= RATE_LIMIT_REQUESTS_MAX:
        raise ValidationError(
            f"Rate limit requests must be between {RATE_LIMIT_REQUESTS_MIN} "
            f"and {RATE_LIMIT_REQUESTS_MAX}"
        )
    if not RATE_LIMIT_PERIOD_MIN_MS <= rate.period <= RATE_LIMIT_PERIOD_MAX_MS:
        raise ValidationError(
            f"Rate limit period must be between {RATE_LIMIT_PERIOD_MIN_MS} "
            f"and {RATE_LIMIT_PERIOD_MAX_MS}ms"
        )

    if config.schedule.enabled:
        validate_schedule(config.schedule)
