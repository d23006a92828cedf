from storesync.db.base import Base
from storesync.models.entities import Mapping, SyncDetail, SyncRun, SyncState

__all__ = ["Base", "Mapping", "SyncDetail", "SyncRun", "SyncState"]
