from pydantic import BaseModel, Field


class SyncRunOut(BaseModel):
    job_id: str
    entity_type: str
    caller: str
    window_start: str | None = None
    window_end: str | None = None
    rows_read: int = 0
    rows_retried: int = 0
    inserted: int = 0
    skipped_migrated: int = 0
    skipped_parent: int = 0
    failed: int = 0
    max_in_flight: int = 0
    duration_sec: float = 0.0


class SyncRunRecordOut(BaseModel):
    job_id: str
    entity_type: str
    caller: str
    running: bool
    stage: str | None = None
    window_start: str | None = None
    window_end: str | None = None
    rows_read: int = 0
    rows_retried: int = 0
    rows_inserted: int = 0
    rows_skipped_migrated: int = 0
    rows_skipped_parent: int = 0
    rows_failed: int = 0
    max_in_flight: int = 0
    error: str | None = None
    started_at: str | None = None
    finished_at: str | None = None
    duration_sec: float | None = None


class SyncRunsOut(BaseModel):
    items: list[SyncRunRecordOut] = Field(default_factory=list)
