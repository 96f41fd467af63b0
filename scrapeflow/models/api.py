from typing import Any

from pydantic import BaseModel


class ExecuteJobResponse(BaseModel):
    job_id: str
    status: str
    message: str


class ErrorBody(BaseModel):
    code: str
    message: str
    retryable: bool = False
    details: dict[str, Any] = {}


class ErrorResponse(BaseModel):
    error: ErrorBody


class HealthResponse(BaseModel):
    status: str
    database: str
    redis: str
    breakers: list[dict[str, Any]] = []
