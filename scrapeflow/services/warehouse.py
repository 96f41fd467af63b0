import threading
from typing import Any, Protocol

import asyncpg
import structlog

from scrapeflow.db.queries.warehouse import insert_result_row

log = structlog.get_logger()


class Warehouse(Protocol):
    async def insert_row(self, table: str, row: dict[str, Any]) -> bool: ...


class InMemoryWarehouse:
    """Rows per table, de-duplicated on ``row_id``."""

    def __init__(self) -> None:
        self.tables: dict[str, dict[str, dict[str, Any]]] = {}
        self.insert_calls = 0
        self._lock = threading.Lock()

    async def insert_row(self, table: str, row: dict[str, Any]) -> bool:
        with self._lock:
            self.insert_calls += 1
            rows = self.tables.setdefault(table, {})
            if row["row_id"] in rows:
                return False
            rows[row["row_id"]] = dict(row)
            return True

    def rows(self, table: str) -> list[dict[str, Any]]:
        return list(self.tables.get(table, {}).values())


class PgWarehouse:
    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def insert_row(self, table: str, row: dict[str, Any]) -> bool:
        inserted = await insert_result_row(self.pool, table, row)
        if not inserted:
            log.info("warehouse_row_deduplicated", table=table, row_id=row["row_id"])
        return inserted
