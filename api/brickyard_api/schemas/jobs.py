from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

JobStatus = Literal["running", "completed", "failed", "timed_out"]


class JobOut(BaseModel):
    id: str
    type: str
    marketplace: str
    dataset_id: str | None = None
    status: JobStatus
    started_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None
    timeout_at: datetime
    error_message: str | None = None
    last_update: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class ExtractedIdentifierOut(BaseModel):
    extracted_id: str
    validated: bool


class LinkedEntityOut(BaseModel):
    catalog_entity_id: str
    identifier: str
    name: str
    nature: str
    potential_year_match: bool = False


class ReconciledListingOut(BaseModel):
    listing_id: str
    title: str | None = None
    description: str | None = None
    sanitized_title: str | None = None
    sanitized_description: str | None = None
    extracted_ids: list[ExtractedIdentifierOut] = Field(default_factory=list)
    links: list[LinkedEntityOut] = Field(default_factory=list)


class JobDetailOut(JobOut):
    reconciled_listings: list[ReconciledListingOut] | None = None


class JobCreateRequest(BaseModel):
    type: str = Field(min_length=1)
    marketplace: str = Field(default="ebay", min_length=1)
    dataset_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class JobLaunchOut(BaseModel):
    job_id: str
    status: str = "running"
    dispatched: bool
    message: str


class HeartbeatRequest(BaseModel):
    metadata: dict[str, Any] = Field(default_factory=dict)
    message: str | None = None


class CompleteRequest(BaseModel):
    summary: dict[str, Any] = Field(default_factory=dict)
    message: str | None = None


class FailRequest(BaseModel):
    error: str = Field(min_length=1)
    metadata: dict[str, Any] = Field(default_factory=dict)


class CancelRequest(BaseModel):
    reason: str | None = None


class CleanupRequest(BaseModel):
    use_fallback: bool = False


class CleanupOut(BaseModel):
    jobs_updated: int
    job_ids: list[str] = Field(default_factory=list)
    strategy: str
    message: str


class CleanupStatsOut(BaseModel):
    running_jobs: int
    stale_jobs: int
    oldest_running_started_at: datetime | None = None
    inactivity_minutes: int
    max_runtime_minutes: int
