import json
from datetime import datetime

import asyncpg


async def insert_result_row(pool: asyncpg.Pool, table: str, row: dict) -> bool:
    """Insert one analytical row. Returns False when ``row_id`` was already present."""
    status = await pool.execute(
        f"""
        INSERT INTO {table} (
            row_id, job_id, source_type, source_url, collected_at,
            validation_status, quality, payload
        )
        VALUES ($1, $2, $3, $4, $5::timestamptz, $6, $7::jsonb, $8::jsonb)
        ON CONFLICT (row_id) DO NOTHING
        """,
        row["row_id"],
        row["job_id"],
        row["source_type"],
        row["source_url"],
        datetime.fromisoformat(row["timestamp"]),
        row["validation"],
        json.dumps(row["quality"]),
        json.dumps(row, default=str),
    )
    return status.endswith(" 1")
