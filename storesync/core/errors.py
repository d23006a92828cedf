from dataclasses import dataclass
from typing import Any

from fastapi import HTTPException


RETRYABLE_HTTP_STATUSES = {408, 425, 429, 500, 502, 503, 504}


class SyncError(Exception):
    """Base class for everything storesync raises on purpose."""


class RemoteError(SyncError):
    pass


class SupplierError(RemoteError):
    pass


class StorefrontError(RemoteError):
    def __init__(self, message: str, status_code: int | None = None, body: Any = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body

    @property
    def is_rejection(self) -> bool:
        """The storefront understood the request and refused it."""
        if self.status_code is None:
            return False
        return 400 <= self.status_code < 500 and self.status_code not in RETRYABLE_HTTP_STATUSES


class InfrastructureError(SyncError):
    """Raised when shared local state is unusable; aborts the whole run."""


class LedgerUnavailableError(InfrastructureError):
    pass


class CacheUnavailableError(InfrastructureError):
    pass


class DeadLetterStateError(SyncError):
    pass


class WorkerStartupError(SyncError):
    pass


@dataclass
class ApiError:
    code: str
    message: str
    details: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
        }
        if self.details:
            payload["details"] = self.details
        return payload


class AppHTTPException(HTTPException):
    def __init__(self, status_code: int, error: ApiError):
        super().__init__(status_code=status_code, detail=error.to_dict())
