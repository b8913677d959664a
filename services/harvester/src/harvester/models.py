from __future__ import annotations

import json
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, HttpUrl

QueueStatus = Literal["pending", "processing", "done", "failed"]
SessionStatus = Literal["running", "completed", "failed"]
SessionTrigger = Literal["manual", "queue"]
TaskStatus = Literal["running", "completed", "failed"]

QUEUE_STATUSES: tuple[str, ...] = ("pending", "processing", "done", "failed")
SESSION_STATUSES: tuple[str, ...] = ("running", "completed", "failed")


class JobSourceCreateRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=1, max_length=120)
    base_url: HttpUrl
    rate_limit: int = Field(default=1000, ge=1, le=10000)
    config: dict[str, Any] | None = None

    def config_json(self) -> str | None:
        if self.config is None:
            return None
        return json.dumps(self.config)


class JobSourceUpdateRequest(BaseModel):
    is_active: bool


class JobSourceCounts(BaseModel):
    scraping_jobs: int = 0
    scraping_sessions: int = 0
    queue: int = 0


class JobSource(BaseModel):
    id: str
    name: str
    base_url: str
    rate_limit: int
    config: dict[str, Any] | None = None
    is_active: bool
    created_at: str
    updated_at: str
    counts: JobSourceCounts | None = None


class QueueEnqueueRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    source: str = Field(..., min_length=1, max_length=120)
    url: HttpUrl | None = None
    priority: int = Field(default=0, ge=-100, le=100)
    max_attempts: int = Field(default=3, ge=1, le=10)


class ScrapeQueueItem(BaseModel):
    id: int
    source_id: str
    source_name: str
    url: str
    priority: int
    status: QueueStatus
    attempts: int
    max_attempts: int
    scheduled_for: str
    claimed_at: str | None = None
    processed_at: str | None = None
    error: str | None = None
    created_by: str
    created_at: str


class QueueDrainSummary(BaseModel):
    requeued_stale: int = 0
    claimed: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0


class ScrapedListing(BaseModel):
    external_id: str
    title: str
    company: str | None = None
    location: str | None = None
    description: str = ""
    job_type: str | None = None
    salary_min: int | None = None
    salary_max: int | None = None
    is_remote: bool = False
    source_url: str | None = None


class StoredJob(BaseModel):
    id: int
    source_id: str
    external_id: str
    title: str
    company: str | None = None
    location: str | None = None
    description: str
    job_type: str | None = None
    salary_min: int | None = None
    salary_max: int | None = None
    is_remote: bool
    source_url: str | None = None
    first_seen_at: str
    last_scraped_at: str


class UpsertSummary(BaseModel):
    created: int
    updated: int


class ScrapingSession(BaseModel):
    id: int
    source_id: str
    status: SessionStatus
    trigger: SessionTrigger
    jobs_found: int
    jobs_created: int
    jobs_updated: int
    jobs_failed: int
    error_message: str | None = None
    started_at: str
    completed_at: str | None = None


class SourceScrapeResult(BaseModel):
    source: str
    jobs_found: int = 0
    jobs_created: int = 0
    jobs_updated: int = 0
    success: bool
    error: str | None = None


class FullScrapeResult(BaseModel):
    success: bool
    results: list[SourceScrapeResult] | None = None
    error: str | None = None


class TriggerRequest(BaseModel):
    sources: list[str] | None = None


class TriggerResponse(BaseModel):
    message: str
    sources: list[str] | Literal["all"]
    status: Literal["running"]
    task_id: str


class TriggerTask(BaseModel):
    task_id: str
    sources: list[str] | None = None
    status: TaskStatus
    results: list[SourceScrapeResult] = Field(default_factory=list)
    error: str | None = None
    created_at: str
    completed_at: str | None = None


class ProcessorStartRequest(BaseModel):
    interval_minutes: float | None = Field(default=None, gt=0, le=1440)


class FullScrapeRequest(BaseModel):
    sources: list[str] | None = None


class ProcessorStatus(BaseModel):
    running: bool
    interval_minutes: float | None = None
    passes_started: int
    passes_completed: int
    passes_failed: int
    in_flight: int
    last_pass_started_at: str | None = None
    last_pass_finished_at: str | None = None
    last_error: str | None = None


class ScrapingStats(BaseModel):
    generated_at: str
    sources: int
    active_sources: int
    jobs: int
    queue: dict[str, int]
    sessions: dict[str, int]
    processor: ProcessorStatus


class MetricsSnapshot(BaseModel):
    generated_at: str
    totals: dict[str, int]
    endpoints: dict[str, dict[str, float | int]]


class ProcessorCommandResponse(BaseModel):
    changed: bool
    processor: ProcessorStatus
