from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class JobRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    job_type: str
    tenant_id: UUID
    status: str
    payload: dict[str, Any]
    result: dict[str, Any] | None
    error: str | None
    correlation_id: str | None
    claimed_by: str | None
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
