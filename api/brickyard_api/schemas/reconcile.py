from typing import Any, Literal

from pydantic import BaseModel, Field

CleanupModeName = Literal["delete", "supersede", "keep"]


class ReconcileTriggerRequest(BaseModel):
    marketplace: str = Field(default="ebay", min_length=1)
    listing_ids: list[str] | None = None
    dataset_id: str | None = None
    limit: int | None = Field(default=None, ge=1)
    reconciliation_version: str | None = None
    cleanup_mode: CleanupModeName = "supersede"
    rerun: bool = False


class ReconcilePlanOut(BaseModel):
    job_id: str
    listing_ids: list[str] = Field(default_factory=list)


class ReconcileBatchRequest(BaseModel):
    listing_ids: list[str] = Field(default_factory=list)


class ReconcileBatchOut(BaseModel):
    job_id: str
    index: int
    succeeded: int
    failed: int
    extracted: int
    validated: int
    links_upserted: int
    errors: list[dict[str, Any]] = Field(default_factory=list)
