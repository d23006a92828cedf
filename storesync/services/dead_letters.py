from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from storesync.core.errors import DeadLetterStateError
from storesync.core.files import read_json


PREFIX = "dead_letter_"
TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"
STATES = ("processed", "failed_retry", "dry_run", "invalid_json")
NAME_RE = re.compile(r"^dead_letter_(?P<body>.+)_(?P<stamp>\d{14})(?:-(?P<seq>\d+))?\.json$")
STATE_RE = re.compile(r"\.json\.(?P<state>[a-z_]+)_\d{14}$")
SAFE_PART_RE = re.compile(r"[^A-Za-z0-9.-]")

logger = logging.getLogger(__name__)


@dataclass
class DeadLetterRecord:
    path: Path
    kind: str
    reason: str
    item_id: str
    captured_at: str
    payload: Any
    details: dict[str, Any] = field(default_factory=dict)


def _stamp(moment: datetime | None = None) -> str:
    return (moment or datetime.now(timezone.utc)).strftime(TIMESTAMP_FORMAT)


def captured_at_from_name(path: Path) -> datetime | None:
    match = NAME_RE.match(path.name)
    if not match:
        return None
    return datetime.strptime(match.group("stamp"), TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


def state_of(path: Path) -> str | None:
    """``None`` for a pending record, otherwise the terminal state its name carries."""
    match = STATE_RE.search(path.name)
    return match.group("state") if match else None


class DeadLetterStore:
    """Durable failure capture, one JSON file per failed item.

    A record is pending while its name ends in ``.json``. It leaves that state
    exactly once, by an atomic rename that appends ``.<state>_<timestamp>``.
    """

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def capture(
        self,
        kind: str,
        reason: str,
        item_id: str | int,
        payload: Any,
        details: dict[str, Any] | None = None,
    ) -> Path:
        now = datetime.now(timezone.utc)
        envelope = {
            "kind": kind,
            "reason": reason,
            "item_id": str(item_id),
            "captured_at": now.isoformat(),
            "payload": payload,
            "details": details or {},
        }
        base = f"{PREFIX}{kind}_{reason}_{SAFE_PART_RE.sub('_', str(item_id))}_{_stamp(now)}"

        fd, tmp_name = tempfile.mkstemp(prefix=".dead_letter.", suffix=".tmp", dir=self.directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(envelope, handle, default=str, indent=2)
            sequence = 0
            while True:
                name = f"{base}.json" if sequence == 0 else f"{base}-{sequence}.json"
                target = self.directory / name
                if not self._name_used(target):
                    try:
                        # link() refuses to overwrite, so two writers can't claim the same name.
                        os.link(tmp_name, target)
                        break
                    except FileExistsError:
                        pass
                sequence += 1
        finally:
            os.unlink(tmp_name)

        logger.warning("Captured %s dead letter for %s (%s): %s", kind, item_id, reason, target.name)
        return target

    def _name_used(self, target: Path) -> bool:
        return target.exists() or any(self.directory.glob(f"{glob_escape(target.name)}.*"))

    def load(self, path: Path) -> DeadLetterRecord:
        data = read_json(path)
        if not isinstance(data, dict) or "payload" not in data:
            raise ValueError(f"{path.name} is not a dead-letter envelope")
        return DeadLetterRecord(
            path=path,
            kind=str(data.get("kind") or ""),
            reason=str(data.get("reason") or ""),
            item_id=str(data.get("item_id") or ""),
            captured_at=str(data.get("captured_at") or ""),
            payload=data["payload"],
            details=data.get("details") or {},
        )

    def pending(self, kind: str | None = None, since: datetime | None = None) -> list[Path]:
        pattern = f"{PREFIX}{kind}_*.json" if kind else f"{PREFIX}*.json"
        paths = []
        for path in self.directory.glob(pattern):
            if since is not None:
                captured = captured_at_from_name(path)
                if captured is None:
                    captured = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
                if captured < since:
                    continue
            paths.append(path)
        return sorted(paths, key=lambda p: (p.stat().st_mtime, p.name), reverse=True)

    def latest(self, kind: str | None = None) -> Path | None:
        paths = self.pending(kind)
        return paths[0] if paths else None

    def transition(self, path: Path, state: str) -> Path:
        if state not in STATES:
            raise ValueError(f"Unknown dead-letter state: {state}")
        if state_of(path) is not None or not path.name.endswith(".json"):
            raise DeadLetterStateError(f"{path.name} already left the pending state")
        target = path.with_name(f"{path.name}.{state}_{_stamp()}")
        try:
            os.rename(path, target)
        except FileNotFoundError as exc:
            raise DeadLetterStateError(f"{path.name} is no longer pending") from exc
        logger.info("Dead letter %s -> %s", path.name, state)
        return target

    def summary(self, kind: str | None = None) -> dict[str, Any]:
        pattern = f"{PREFIX}{kind}_*" if kind else f"{PREFIX}*"
        by_reason: Counter[str] = Counter()
        by_state: Counter[str] = Counter()
        for path in self.directory.glob(pattern):
            state = state_of(path)
            if state is not None:
                by_state[state] += 1
                continue
            if not path.name.endswith(".json"):
                continue
            by_state["pending"] += 1
            try:
                by_reason[self.load(path).reason] += 1
            except (OSError, ValueError):
                by_reason["unreadable"] += 1
        return {"pending": by_state.get("pending", 0), "by_reason": dict(by_reason), "by_state": dict(by_state)}


def glob_escape(name: str) -> str:
    return re.sub(r"([*?\[])", r"[\1]", name)
