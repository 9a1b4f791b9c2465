from datetime import date
from typing import Literal

from pydantic import BaseModel, Field, model_validator

TaskStatus = Literal["open", "snoozed", "in_progress", "done", "dismissed"]


class SyncRequest(BaseModel):
    site_url: str = Field(min_length=1)
    start_date: date | None = None
    end_date: date | None = None
    dry_run: bool = False
    skip_tasks: bool = False
    check_index: bool | None = None
    quiet_period_days: int | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def validate_range(self) -> "SyncRequest":
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValueError("start_date must not be after end_date")
        return self


class IndexStatusOut(BaseModel):
    checked: int
    indexed: int
    not_indexed: int
    skipped: int
    failed_pages: list[str] = Field(default_factory=list)


class SyncResponse(BaseModel):
    site_url: str
    site_ref: str
    sync_log_id: str
    pages: int
    rows_processed: int
    matched: int
    unmatched: int
    unmatched_by_reason: dict[str, int]
    signals: int
    tasks_created: int
    snapshots_written: int
    insight_id: str | None = None
    index_status: IndexStatusOut | None = None
    dry_run: bool


class TaskStatusPatchRequest(BaseModel):
    status: TaskStatus
    snooze_days: int | None = Field(default=None, ge=1, le=365)
    notes: str | None = Field(default=None, max_length=2000)


class TaskStatusPatchResponse(BaseModel):
    task_id: str
    status: TaskStatus
    snoozed_until: str | None = None
    resolved_at: str | None = None
    notes: str | None = None
