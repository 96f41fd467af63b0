import json

import asyncpg

from scrapeflow.models.job import Job, JobFilter


def _row_to_job(row: asyncpg.Record) -> Job:
    data = dict(row)
    for field in ("config", "execution_details", "error"):
        if isinstance(data.get(field), str):
            data[field] = json.loads(data[field])
    return Job.model_validate(data)


def _dump(model: object | None) -> str | None:
    if model is None:
        return None
    return model.model_dump_json()  # type: ignore[attr-defined]


async def create_job(pool: asyncpg.Pool, job: Job) -> Job:
    row = await pool.fetchrow(
        """
        INSERT INTO scrape_jobs (
            id, status, config, execution_details, retry_count,
            last_retry_at, error, version, created_at, updated_at
        )
        VALUES ($1, $2, $3::jsonb, $4::jsonb, $5, $6, $7::jsonb, $8, $9, $10)
        RETURNING *
        """,
        job.id,
        job.status,
        _dump(job.config),
        _dump(job.execution_details),
        job.retry_count,
        job.last_retry_at,
        _dump(job.error),
        job.version,
        job.created_at,
        job.updated_at,
    )
    assert row is not None
    return _row_to_job(row)


async def get_job(pool: asyncpg.Pool, job_id: str) -> Job | None:
    row = await pool.fetchrow("SELECT * FROM scrape_jobs WHERE id = $1", job_id)
    if row is None:
        return None
    return _row_to_job(row)


async def replace_job(pool: asyncpg.Pool, job: Job, expected_version: int) -> Job | None:
    """Write ``job`` only if the stored version still matches. None means stale."""
    row = await pool.fetchrow(
        """
        UPDATE scrape_jobs SET
            status = $3,
            execution_details = $4::jsonb,
            retry_count = $5,
            last_retry_at = $6,
            error = $7::jsonb,
            version = $8,
            updated_at = $9
        WHERE id = $1 AND version = $2
        RETURNING *
        """,
        job.id,
        expected_version,
        job.status,
        _dump(job.execution_details),
        job.retry_count,
        job.last_retry_at,
        _dump(job.error),
        job.version,
        job.updated_at,
    )
    if row is None:
        return None
    return _row_to_job(row)


async def list_jobs(pool: asyncpg.Pool, filter: JobFilter) -> tuple[list[Job], int]:
    conditions = []
    vals: list[object] = []
    idx = 1

    if filter.status:
        conditions.append(f"status = ${idx}")
        vals.append(filter.status)
        idx += 1
    if filter.start_date:
        conditions.append(f"created_at >= ${idx}")
        vals.append(filter.start_date)
        idx += 1
    if filter.end_date:
        conditions.append(f"created_at <= ${idx}")
        vals.append(filter.end_date)
        idx += 1

    where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
    total = await pool.fetchval(f"SELECT COUNT(*) FROM scrape_jobs {where}", *vals)

    offset = (filter.page - 1) * filter.page_size
    query = (
        f"SELECT * FROM scrape_jobs {where} "
        f"ORDER BY created_at DESC LIMIT ${idx} OFFSET ${idx + 1}"
    )
    rows = await pool.fetch(query, *vals, filter.page_size, offset)
    return [_row_to_job(row) for row in rows], int(total or 0)

