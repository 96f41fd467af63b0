import asyncio
import json
import threading
from enum import StrEnum
from pathlib import Path
from typing import Protocol

import structlog

from scrapeflow.config.settings import Settings
from scrapeflow.models.result import StorageLocation

log = structlog.get_logger()


class BucketClass(StrEnum):
    RAW = "raw"
    PROCESSED = "processed"


class ObjectStorage(Protocol):
    async def put(
        self,
        bucket_class: BucketClass,
        path: str,
        data: bytes,
        metadata: dict[str, str],
        encryption_key_ref: str | None = None,
    ) -> StorageLocation: ...


def _bucket_name(settings: Settings, bucket_class: BucketClass) -> str:
    if bucket_class == BucketClass.RAW:
        return settings.raw_bucket
    return settings.processed_bucket


class InMemoryObjectStorage:
    """Object storage kept in a dict, keyed by (bucket, path)."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.objects: dict[tuple[str, str], tuple[bytes, dict[str, str]]] = {}
        self._lock = threading.Lock()

    async def put(
        self,
        bucket_class: BucketClass,
        path: str,
        data: bytes,
        metadata: dict[str, str],
        encryption_key_ref: str | None = None,
    ) -> StorageLocation:
        bucket = _bucket_name(self.settings, bucket_class)
        with self._lock:
            self.objects[(bucket, path)] = (data, dict(metadata))
        return StorageLocation(
            bucket=bucket,
            path=path,
            uri=f"memory://{bucket}/{path}",
            size=len(data),
            encryption_key_ref=encryption_key_ref,
        )


class LocalObjectStorage:
    """Filesystem-backed object storage for development setups."""

    def __init__(self, settings: Settings, root: str | None = None):
        self.settings = settings
        self.root = Path(root or settings.storage_root)

    def _write(self, target: Path, data: bytes, metadata: dict[str, str]) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        target.with_name(target.name + ".meta.json").write_text(json.dumps(metadata))

    async def put(
        self,
        bucket_class: BucketClass,
        path: str,
        data: bytes,
        metadata: dict[str, str],
        encryption_key_ref: str | None = None,
    ) -> StorageLocation:
        bucket = _bucket_name(self.settings, bucket_class)
        target = self.root / bucket / path
        meta = {**metadata, "encryption_key_ref": encryption_key_ref or ""}
        await asyncio.to_thread(self._write, target, data, meta)
        log.debug("object_written", bucket=bucket, path=path, size=len(data))
        return StorageLocation(
            bucket=bucket,
            path=path,
            uri=target.resolve().as_uri(),
            size=len(data),
            encryption_key_ref=encryption_key_ref,
        )
