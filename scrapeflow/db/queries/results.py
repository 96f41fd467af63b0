import json

import asyncpg

from scrapeflow.models.result import Result


async def save_result(pool: asyncpg.Pool, result: Result) -> None:
    await pool.execute(
        """
        INSERT INTO scrape_results (id, job_id, payload)
        VALUES ($1, $2, $3::jsonb)
        ON CONFLICT (id) DO UPDATE SET payload = EXCLUDED.payload
        """,
        str(result.id),
        str(result.job_id),
        result.model_dump_json(),
    )


async def get_latest_result(pool: asyncpg.Pool, job_id: str) -> Result | None:
    payload = await pool.fetchval(
        """
        SELECT payload FROM scrape_results
        WHERE job_id = $1
        ORDER BY created_at DESC
        LIMIT 1
        """,
        job_id,
    )
    if payload is None:
        return None
    if isinstance(payload, str):
        payload = json.loads(payload)
    return Result.model_validate(payload)
