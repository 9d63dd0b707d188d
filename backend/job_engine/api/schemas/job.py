"""Job control request and response payloads."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class JobCreate(BaseModel):
    type: str = Field(..., min_length=1, max_length=64, description="Handler type, e.g. generate, verify, scrape, import")
    metadata: dict[str, Any] = Field(default_factory=dict, description="Handler input; parameters live under 'params'")


class JobCreated(BaseModel):
    job_id: str
    duplicate: bool = Field(False, description="True when an equivalent recent job was returned instead")
    stream_url: str
    status_url: str


class JobOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    type: str
    status: str = Field(..., description="pending|running|completed|failed|cancelled")
    progress: int = Field(..., ge=0, le=100)
    metadata: dict[str, Any] = Field(default_factory=dict)
    result_data: dict[str, Any] | None = None
    error_message: str | None = None
    owner_id: str | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None


class Pagination(BaseModel):
    limit: int
    offset: int
    total: int
    has_more: bool


class JobList(BaseModel):
    jobs: list[JobOut]
    summary: dict[str, int]
    pagination: Pagination


class ResultPage(BaseModel):
    job_id: str
    status: str
    partial: bool = False
    items: list[Any]
    summary: dict[str, Any] = Field(default_factory=dict, description="Result fields other than items")
    pagination: Pagination
