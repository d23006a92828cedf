from __future__ import annotations

from datetime import datetime, timedelta, timezone

from storesync.core.cache import ResponseCache
from storesync.core.errors import ApiError, AppHTTPException
from storesync.models import SyncDetail, SyncRun
from storesync.schemas.admin import (
    CacheStatusOut,
    DailySummaryOut,
    DeadLetterOut,
    DeadLetterSummaryOut,
    SyncDetailOut,
    SyncRunDetailOut,
    SyncRunOut,
)
from storesync.services.dead_letters import DeadLetterStore
from storesync.services.stats import SyncStats


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _run_out(run: SyncRun) -> dict:
    return {
        "id": run.id,
        "kind": run.kind,
        "status": run.status,
        "items_processed": run.items_processed,
        "items_succeeded": run.items_succeeded,
        "items_failed": run.items_failed,
        "error_summary": run.error_summary,
        "started_at": _iso(run.started_at) or "",
        "finished_at": _iso(run.finished_at),
    }


def _detail_out(detail: SyncDetail) -> SyncDetailOut:
    return SyncDetailOut(
        item_id=detail.item_id,
        item_type=detail.item_type,
        operation=detail.operation,
        status=detail.status,
        reason=detail.reason,
        message=detail.message,
        created_at=_iso(detail.created_at) or "",
    )


def list_sync_runs(stats: SyncStats, limit: int = 50, kind: str | None = None) -> list[SyncRunOut]:
    return [SyncRunOut(**_run_out(run)) for run in stats.recent_runs(limit=limit, kind=kind)]


def get_sync_run(stats: SyncStats, run_id: str, status: str | None = None) -> SyncRunDetailOut:
    run = stats.get_run(run_id)
    if run is None:
        raise AppHTTPException(
            status_code=404,
            error=ApiError(code="not_found", message="Sync run not found", details={"run_id": run_id}),
        )
    details = [_detail_out(detail) for detail in stats.run_details(run_id, status=status)]
    return SyncRunDetailOut(**_run_out(run), details=details)


def daily_summary(stats: SyncStats, kind: str | None = None, days: int = 7) -> list[DailySummaryOut]:
    end = datetime.now(timezone.utc).date()
    start = end - timedelta(days=max(0, days - 1))
    return [DailySummaryOut(**row) for row in stats.daily_summary(kind=kind, start=start, end=end)]


def dead_letter_summary(store: DeadLetterStore, kind: str | None = None, limit: int = 20) -> DeadLetterSummaryOut:
    summary = store.summary(kind)
    recent: list[DeadLetterOut] = []
    for path in store.pending(kind)[:limit]:
        try:
            record = store.load(path)
        except (OSError, ValueError):
            continue
        recent.append(
            DeadLetterOut(
                name=path.name,
                kind=record.kind,
                reason=record.reason,
                item_id=record.item_id,
                captured_at=record.captured_at,
                message=record.details.get("message"),
            )
        )
    return DeadLetterSummaryOut(**summary, recent=recent)


def cache_status(cache: ResponseCache) -> CacheStatusOut:
    return CacheStatusOut(**cache.status())
