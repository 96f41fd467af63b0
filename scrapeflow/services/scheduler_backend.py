"""Adapters for the external scheduling service that fires recurring triggers."""

import threading
from typing import Protocol
from zoneinfo import ZoneInfo

import httpx
import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from scrapeflow.models.schedule import RetryPolicy
from scrapeflow.utils.errors import NotFoundError
from scrapeflow.utils.retry import retry_async

log = structlog.get_logger()


class SchedulerBackend(Protocol):
    async def register_trigger(
        self,
        schedule_id: str,
        cron_expression: str,
        timezone: str,
        callback_target: str,
        retry_policy: RetryPolicy,
    ) -> None: ...

    async def deregister_trigger(self, schedule_id: str) -> None: ...


class InMemorySchedulerBackend:
    """Keeps registered triggers in a dict. Nothing ever fires on its own."""

    def __init__(self) -> None:
        self.triggers: dict[str, dict] = {}
        self._lock = threading.Lock()

    async def register_trigger(
        self,
        schedule_id: str,
        cron_expression: str,
        timezone: str,
        callback_target: str,
        retry_policy: RetryPolicy,
    ) -> None:
        with self._lock:
            self.triggers[schedule_id] = {
                "cron_expression": cron_expression,
                "timezone": timezone,
                "callback_target": callback_target,
                "retry_policy": retry_policy,
            }

    async def deregister_trigger(self, schedule_id: str) -> None:
        with self._lock:
            if self.triggers.pop(schedule_id, None) is None:
                raise NotFoundError(f"No trigger registered as {schedule_id}")


class APSchedulerBackend:
    """Cron triggers on an AsyncIOScheduler that POST to the callback target.

    Delivery is at-least-once: a failed callback is retried with the
    registered policy, so the receiving side must tolerate duplicates.
    """

    def __init__(
        self,
        scheduler: AsyncIOScheduler | None = None,
        client: httpx.AsyncClient | None = None,
        headers: dict[str, str] | None = None,
    ):
        self.scheduler = scheduler or AsyncIOScheduler()
        self._client = client
        self._headers = {"Content-Type": "application/json", **(headers or {})}

    def start(self) -> None:
        if not self.scheduler.running:
            self.scheduler.start()

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

    async def _post(self, callback_target: str) -> None:
        if self._client is not None:
            response = await self._client.post(callback_target, headers=self._headers)
        else:
            async with httpx.AsyncClient(timeout=30.0) as client:
                response = await client.post(callback_target, headers=self._headers)
        response.raise_for_status()

    async def _fire(self, schedule_id: str, callback_target: str, policy: RetryPolicy) -> None:
        log.info("schedule_trigger_fired", schedule_id=schedule_id)
        try:
            await retry_async(
                self._post,
                callback_target,
                max_attempts=policy.max_attempts,
                base_delay=policy.initial_delay_ms / 1000.0,
                max_delay=policy.max_delay_ms / 1000.0,
                factor=policy.backoff_multiplier,
            )
        except Exception:
            log.exception("schedule_trigger_delivery_failed", schedule_id=schedule_id)

    async def register_trigger(
        self,
        schedule_id: str,
        cron_expression: str,
        timezone: str,
        callback_target: str,
        retry_policy: RetryPolicy,
    ) -> None:
        trigger = CronTrigger.from_crontab(cron_expression, timezone=ZoneInfo(timezone))
        self.scheduler.add_job(
            self._fire,
            trigger,
            args=[schedule_id, callback_target, retry_policy],
            id=schedule_id,
            replace_existing=True,
            misfire_grace_time=60,
            coalesce=True,
        )

    async def deregister_trigger(self, schedule_id: str) -> None:
        if self.scheduler.get_job(schedule_id) is None:
            raise NotFoundError(f"No trigger registered as {schedule_id}")
        self.scheduler.remove_job(schedule_id)
