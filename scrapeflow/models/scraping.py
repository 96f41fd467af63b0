from typing import Any

from pydantic import BaseModel


class RawContent(BaseModel):
    url: str
    status_code: int
    content: Any
    content_type: str = "application/json"
    headers: dict[str, str] = {}
    bytes_received: int = 0
    duration_ms: int = 0
