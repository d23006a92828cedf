from fastapi import Header

from storesync.core.cache import ResponseCache
from storesync.core.config import get_settings
from storesync.core.errors import ApiError, AppHTTPException
from storesync.db.session import get_session_factory
from storesync.services.dead_letters import DeadLetterStore
from storesync.services.stats import SyncStats


def require_admin_token(x_admin_token: str | None = Header(default=None)) -> None:
    settings = get_settings()
    if x_admin_token != settings.admin_token:
        raise AppHTTPException(status_code=401, error=ApiError(code="unauthorized", message="Invalid admin token"))


def get_stats() -> SyncStats:
    return SyncStats(get_session_factory())


def get_dead_letters() -> DeadLetterStore:
    return DeadLetterStore(get_settings().dead_letter_dir)


def get_cache() -> ResponseCache:
    settings = get_settings()
    return ResponseCache(settings.cache_dir, ttl_seconds=settings.cache_ttl_hours * 3600)
