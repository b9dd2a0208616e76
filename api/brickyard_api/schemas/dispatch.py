from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class DispatchOut(BaseModel):
    id: str
    job_id: str
    stage: str
    params: dict[str, Any] = Field(default_factory=dict)
    status: str
    attempts: int
    locked_by: str | None = None
    lease_expires_at: datetime | None = None
    created_at: datetime


class DispatchClaimRequest(BaseModel):
    stages: list[str] = Field(min_length=1)
    lease_seconds: int | None = Field(default=None, ge=1, le=3600)


class DispatchReapRequest(BaseModel):
    limit: int = Field(default=100, ge=1, le=1000)


class DispatchReapOut(BaseModel):
    requeued: int
    dead: int


class DispatchRenewRequest(BaseModel):
    lease_seconds: int | None = Field(default=None, ge=1, le=3600)
