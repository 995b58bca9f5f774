"""Sync run record, progress events and batch results."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class RunStatus(str, Enum):
    OK = "ok"
    PARTIAL = "partial"
    FAILED = "failed"

    @property
    def exit_code(self) -> int:
        return {RunStatus.OK: 0, RunStatus.FAILED: 1, RunStatus.PARTIAL: 2}[self]


class RunState(str, Enum):
    INIT = "init"
    ACQUIRING_TOKEN = "acquiring_token"
    FETCHING_PAGE = "fetching_page"
    UPSERTING_BATCH = "upserting_batch"
    NEXT_WINDOW = "next_window"
    DONE_OK = "done_ok"
    DONE_PARTIAL = "done_partial"
    DONE_FAILED = "done_failed"


class Window(BaseModel):
    """Half-open date range [start, end) passed to the list endpoint as date filters."""
    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime

    def label(self) -> str:
        return f"{self.start:%Y-%m-%d %H:%M} -> {self.end:%Y-%m-%d %H:%M}"


class RecordError(BaseModel):
    kiotviet_id: Any = None
    code: str | None = None
    stage: str  # 'transform' | 'children' | 'parent' | 'batch' | 'run'
    message: str


class BatchResult(BaseModel):
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: list[RecordError] = []


class ProgressEvent(BaseModel):
    """Emitted by the orchestrator after every batch."""
    entity: str
    window: Window | None = None
    cursor: int
    total: int
    attempted_so_far: int
    failed_so_far: int


class SyncRun(BaseModel):
    """One orchestrator invocation for one entity. Sealed when ended_at is set."""

    entity: str
    mode: str  # 'full' | 'window' | 'historical' | 'single'
    started_at: datetime
    ended_at: datetime | None = None
    window_from: datetime | None = None
    window_to: datetime | None = None
    windows_completed: int = 0
    pages_fetched: int = 0
    records_attempted: int = 0
    records_upserted: int = 0
    records_failed: int = 0
    error_samples: list[RecordError] = []
    terminal_status: RunStatus | None = None
    fatal_error: str | None = None
    cancelled: bool = False
    windows: list[Window] = Field(default_factory=list)

    @property
    def elapsed_seconds(self) -> float:
        if self.ended_at is None:
            return 0.0
        return (self.ended_at - self.started_at).total_seconds()

    @property
    def exit_code(self) -> int:
        return self.terminal_status.exit_code if self.terminal_status else 1
