from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from storesync.core.errors import DeadLetterStateError
from storesync.mapping.orders import repair_customer_email
from storesync.schemas.worker import VALIDATION_FAILED
from storesync.services.dead_letters import DeadLetterRecord, DeadLetterStore
from storesync.services.ledger import ORDER

if TYPE_CHECKING:
    from storesync.engine.base import ReconciliationEngine


logger = logging.getLogger(__name__)

FAILURE_HINTS = {
    "email": "Customer email missing; repair can backfill it from the addresses or a placeholder.",
    "phone": "Phone number missing on the shipping address.",
    "address": "Shipping address incomplete; fix it on the storefront order.",
    "sku": "Line item without SKU; the product may not be mapped.",
    "postal": "Postal code missing on the shipping address.",
}


@dataclass
class RetryReport:
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    dry_run: int = 0
    invalid: int = 0
    remaining: int = 0
    processed_files: list[Path] = field(default_factory=list)


def analyze_failure(record: DeadLetterRecord) -> list[str]:
    """Operator hints derived from the recorded failure details."""
    errors = record.details.get("errors") or []
    text = " ".join([str(record.details.get("message") or ""), *[str(e) for e in errors]]).lower()
    hints = [hint for needle, hint in FAILURE_HINTS.items() if needle in text]
    if record.reason == "create_failed":
        hints.append("Supplier rejected the order; check its product availability.")
    if record.reason in {"invalid_response", "unknown_response"}:
        hints.append("Supplier answered unexpectedly; a plain retry usually clears this.")
    return hints


class DeadLetterRetrier:
    """Replays pending dead letters through the engine's single-item path."""

    def __init__(self, store: DeadLetterStore, engine: ReconciliationEngine) -> None:
        self.store = store
        self.engine = engine

    @property
    def kind(self) -> str:
        return self.engine.kind

    def retry_latest(self, max_attempts: int = 1, repair: bool = True, dry_run: bool = False) -> RetryReport:
        report = RetryReport()
        for _ in range(max(1, max_attempts)):
            path = self.store.latest(self.kind)
            if path is None:
                logger.info("No pending %s dead letters", self.kind)
                break
            self._retry_file(path, report, repair=repair, dry_run=dry_run)
        report.remaining = len(self.store.pending(self.kind))
        return report

    def retry_all(
        self,
        since_days: int = 7,
        include_all: bool = False,
        repair: bool = True,
        dry_run: bool = False,
    ) -> RetryReport:
        since = None if include_all else datetime.now(timezone.utc) - timedelta(days=since_days)
        paths = self.store.pending(self.kind, since=since)
        logger.info("Retrying %s pending %s dead letters", len(paths), self.kind)
        report = RetryReport()
        for path in paths:
            self._retry_file(path, report, repair=repair, dry_run=dry_run)
        report.remaining = len(self.store.pending(self.kind))
        return report

    def _retry_file(self, path: Path, report: RetryReport, repair: bool, dry_run: bool) -> None:
        try:
            record = self.store.load(path)
        except (OSError, ValueError) as exc:
            logger.error("Dead letter %s is unreadable: %s", path.name, exc)
            self._transition(path, "invalid_json", report)
            report.invalid += 1
            return

        for hint in analyze_failure(record):
            logger.info("%s: %s", path.name, hint)

        payload = record.payload
        if self.engine.single_worker().mapped_remote_id(payload):
            logger.info("%s %s already has a counterpart; marking processed", self.kind, record.item_id)
            if self._transition(path, "processed", report):
                report.skipped += 1
            return

        if repair and record.reason == VALIDATION_FAILED and record.kind == ORDER:
            payload, fixes = repair_customer_email(payload)
            for fix in fixes:
                logger.info("%s: %s", path.name, fix)

        if dry_run:
            logger.info("Dry run: would replay %s %s", self.kind, record.item_id)
            if self._transition(path, "dry_run", report):
                report.dry_run += 1
            return

        report.attempted += 1
        if self.engine.process_single(payload):
            if self._transition(path, "processed", report):
                report.succeeded += 1
        else:
            if self._transition(path, "failed_retry", report):
                report.failed += 1

    def _transition(self, path: Path, state: str, report: RetryReport) -> bool:
        try:
            report.processed_files.append(self.store.transition(path, state))
        except DeadLetterStateError as exc:
            # Another retrier got there first.
            logger.warning("Skipping %s: %s", path.name, exc)
            return False
        return True
