from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from storesync.core.errors import CacheUnavailableError
from storesync.core.files import read_json, write_json_atomic


ENTRY_PREFIX = "product_"
SAFE_KEY_RE = re.compile(r"[^A-Za-z0-9_.-]")

logger = logging.getLogger(__name__)


@dataclass
class CacheResult:
    hit: bool
    value: Any | None


@dataclass
class CacheEntryInfo:
    item_id: str
    path: Path
    cached_at: float
    expires_at: float
    size_bytes: int
    expired: bool


class ResponseCache:
    """File-backed cache of supplier detail responses.

    One JSON file per item holding ``cached_at``, ``expires_at`` and the
    payload. Entries are never swept; an expired entry is simply a miss and the
    next successful fetch overwrites it in full.
    """

    def __init__(self, directory: Path, ttl_seconds: float, clock: Callable[[], float] = time.time) -> None:
        self.directory = Path(directory)
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise CacheUnavailableError(f"Cache directory {self.directory} is not usable: {exc}") from exc

    def path_for(self, item_id: str | int) -> Path:
        key = SAFE_KEY_RE.sub("_", str(item_id))
        return self.directory / f"{ENTRY_PREFIX}{key}.json"

    def get(self, item_id: str | int) -> CacheResult:
        path = self.path_for(item_id)
        if not path.exists():
            return CacheResult(hit=False, value=None)
        try:
            entry = read_json(path)
            expires_at = float(entry["expires_at"])
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.warning("Ignoring unreadable cache entry %s (%s)", path.name, exc)
            return CacheResult(hit=False, value=None)
        if self.clock() >= expires_at:
            return CacheResult(hit=False, value=None)
        return CacheResult(hit=True, value=entry.get("payload"))

    def put(self, item_id: str | int, payload: Any) -> None:
        now = self.clock()
        entry = {
            "item_id": str(item_id),
            "cached_at": now,
            "expires_at": now + self.ttl_seconds,
            "payload": payload,
        }
        try:
            write_json_atomic(self.path_for(item_id), entry)
        except OSError as exc:
            raise CacheUnavailableError(f"Could not write cache entry for {item_id}: {exc}") from exc

    def invalidate(self, item_id: str | int | None = None) -> int:
        if item_id is not None:
            paths = [self.path_for(item_id)]
        else:
            paths = list(self.directory.glob(f"{ENTRY_PREFIX}*.json"))
        removed = 0
        for path in paths:
            try:
                path.unlink()
                removed += 1
            except FileNotFoundError:
                continue
        return removed

    def entries(self) -> list[CacheEntryInfo]:
        now = self.clock()
        infos: list[CacheEntryInfo] = []
        for path in sorted(self.directory.glob(f"{ENTRY_PREFIX}*.json")):
            try:
                entry = read_json(path)
                size = path.stat().st_size
                expires_at = float(entry["expires_at"])
                cached_at = float(entry.get("cached_at", 0))
            except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError):
                continue
            infos.append(
                CacheEntryInfo(
                    item_id=str(entry.get("item_id") or path.stem[len(ENTRY_PREFIX):]),
                    path=path,
                    cached_at=cached_at,
                    expires_at=expires_at,
                    size_bytes=size,
                    expired=now >= expires_at,
                )
            )
        return infos

    def status(self) -> dict[str, Any]:
        infos = self.entries()
        expired = sum(1 for info in infos if info.expired)
        return {
            "directory": str(self.directory),
            "ttl_seconds": self.ttl_seconds,
            "total": len(infos),
            "valid": len(infos) - expired,
            "expired": expired,
            "size_bytes": sum(info.size_bytes for info in infos),
        }
