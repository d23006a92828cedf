from pydantic import BaseModel


class SyncRunOut(BaseModel):
    id: str
    kind: str
    status: str
    items_processed: int
    items_succeeded: int
    items_failed: int
    error_summary: str | None
    started_at: str
    finished_at: str | None


class SyncDetailOut(BaseModel):
    item_id: str
    item_type: str
    operation: str
    status: str
    reason: str | None
    message: str | None
    created_at: str


class SyncRunDetailOut(SyncRunOut):
    details: list[SyncDetailOut]


class DailySummaryOut(BaseModel):
    day: str
    kind: str
    runs: int
    processed: int
    succeeded: int
    failed: int
    successful_runs: int


class DeadLetterOut(BaseModel):
    name: str
    kind: str
    reason: str
    item_id: str
    captured_at: str
    message: str | None


class DeadLetterSummaryOut(BaseModel):
    pending: int
    by_reason: dict[str, int]
    by_state: dict[str, int]
    recent: list[DeadLetterOut]


class CacheStatusOut(BaseModel):
    directory: str
    ttl_seconds: float
    total: int
    valid: int
    expired: int
    size_bytes: int
