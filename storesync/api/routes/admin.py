from fastapi import APIRouter, Depends, Query

from storesync.api.deps import get_cache, get_dead_letters, get_stats, require_admin_token
from storesync.core.cache import ResponseCache
from storesync.schemas.admin import CacheStatusOut, DailySummaryOut, DeadLetterSummaryOut, SyncRunDetailOut, SyncRunOut
from storesync.services.admin import cache_status, daily_summary, dead_letter_summary, get_sync_run, list_sync_runs
from storesync.services.dead_letters import DeadLetterStore
from storesync.services.stats import SyncStats

router = APIRouter(prefix="/v1/admin", tags=["admin"], dependencies=[Depends(require_admin_token)])


@router.get("/sync-runs", response_model=list[SyncRunOut])
def sync_runs(
    limit: int = Query(default=50, ge=1, le=500),
    kind: str | None = Query(default=None),
    stats: SyncStats = Depends(get_stats),
) -> list[SyncRunOut]:
    return list_sync_runs(stats, limit=limit, kind=kind)


@router.get("/sync-runs/{run_id}", response_model=SyncRunDetailOut)
def sync_run(run_id: str, status: str | None = Query(default=None), stats: SyncStats = Depends(get_stats)) -> SyncRunDetailOut:
    return get_sync_run(stats, run_id, status=status)


@router.get("/summary", response_model=list[DailySummaryOut])
def summary(
    kind: str | None = Query(default=None),
    days: int = Query(default=7, ge=1, le=90),
    stats: SyncStats = Depends(get_stats),
) -> list[DailySummaryOut]:
    return daily_summary(stats, kind=kind, days=days)


@router.get("/dead-letters", response_model=DeadLetterSummaryOut)
def dead_letters(
    kind: str | None = Query(default=None),
    limit: int = Query(default=20, ge=1, le=200),
    store: DeadLetterStore = Depends(get_dead_letters),
) -> DeadLetterSummaryOut:
    return dead_letter_summary(store, kind=kind, limit=limit)


@router.get("/cache", response_model=CacheStatusOut)
def cache(cache: ResponseCache = Depends(get_cache)) -> CacheStatusOut:
    return cache_status(cache)
