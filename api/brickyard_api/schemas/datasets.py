from pydantic import BaseModel, Field


class DatasetProgressOut(BaseModel):
    dataset_id: str
    completed_stages: list[str] = Field(default_factory=list)
    next_stage: str | None = None
    job_statuses: dict[str, str] = Field(default_factory=dict)


class RunNextJobOut(BaseModel):
    job_id: str
    stage: str
    dispatched: bool
    message: str


class RunToCompletionOut(BaseModel):
    job_id: str
    stage: str
    dispatched: bool
    remaining_stages: list[str] = Field(default_factory=list)
    message: str
