import threading
from typing import Protocol

from scrapeflow.models.schedule import ScheduleMetadata


class ScheduleRegistry(Protocol):
    def put(self, metadata: ScheduleMetadata) -> None: ...

    def get(self, job_id: str) -> ScheduleMetadata | None: ...

    def remove(self, job_id: str) -> ScheduleMetadata | None: ...

    def snapshot(self) -> list[ScheduleMetadata]: ...


class InMemoryScheduleRegistry:
    """Active schedules of this process. Lost on restart."""

    def __init__(self) -> None:
        self._schedules: dict[str, ScheduleMetadata] = {}
        self._lock = threading.Lock()

    def put(self, metadata: ScheduleMetadata) -> None:
        with self._lock:
            self._schedules[metadata.job_id] = metadata

    def get(self, job_id: str) -> ScheduleMetadata | None:
        with self._lock:
            return self._schedules.get(job_id)

    def remove(self, job_id: str) -> ScheduleMetadata | None:
        with self._lock:
            return self._schedules.pop(job_id, None)

    def snapshot(self) -> list[ScheduleMetadata]:
        with self._lock:
            return [m.model_copy() for m in self._schedules.values()]
