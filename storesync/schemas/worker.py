from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


# Item outcome statuses.
SUCCESS = "success"
FAILED = "failed"
SKIPPED = "skipped"

# Failure reasons, shared with dead-letter file names.
VALIDATION_FAILED = "validation_failed"
INVALID_RESPONSE = "invalid_response"
UNKNOWN_RESPONSE = "unknown_response"
CREATE_FAILED = "create_failed"
UPDATE_FAILED = "update_failed"
EXCEPTION = "exception"

# Remaining time before any item has been timed.
UNKNOWN_ETA = "unknown"

FAILURE_REASONS = (
    VALIDATION_FAILED,
    INVALID_RESPONSE,
    UNKNOWN_RESPONSE,
    CREATE_FAILED,
    UPDATE_FAILED,
    EXCEPTION,
)


class ProgressSnapshot(BaseModel):
    worker_id: int
    processed_items: int = 0
    total_items: int = 0
    progress_percent: float = 0.0
    elapsed_time: float = 0.0
    items_per_second: float = 0.0
    estimated_time_remaining: float | str = UNKNOWN_ETA


class ItemOutcome(BaseModel):
    item_id: str
    operation: str
    status: str
    reason: str | None = None
    message: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status != FAILED


class WorkerResult(BaseModel):
    """Shape of a worker's result file, both mid-run and final."""

    worker_id: int
    worker_type: str
    total: int = 0
    processed: int = 0
    success: int = 0
    failed: int = 0
    data: list[dict[str, Any]] = Field(default_factory=list)
    failed_items: list[dict[str, Any]] = Field(default_factory=list)
    outcomes: list[ItemOutcome] = Field(default_factory=list)
    progress: ProgressSnapshot | None = None
    final: bool = False
    error: str | None = None
    infrastructure_error: bool = False
