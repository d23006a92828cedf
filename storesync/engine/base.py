from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from storesync.context import SyncServices
from storesync.core.errors import InfrastructureError
from storesync.schemas.worker import EXCEPTION, FAILED, SKIPPED, ItemOutcome
from storesync.workers.base import SyncWorker
from storesync.workers.pool import WorkerPool


logger = logging.getLogger(__name__)


@dataclass
class SyncReport:
    run_id: str
    kind: str
    status: str
    total: int = 0
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    unreported: int = 0
    outcomes: list[ItemOutcome] = field(default_factory=list)


def run_status(succeeded: int, failed: int) -> str:
    if failed == 0:
        return "success"
    return "failure" if succeeded == 0 else "partial"


class ReconciliationEngine(ABC):
    """Runs one reconciliation batch for a single kind of item.

    Fetches candidates, fans them out to worker processes (or handles a small
    batch in-process), and records what happened. Every item ends the run with
    an outcome: items no worker reported are dead-lettered here.
    """

    kind: str
    worker_class: type[SyncWorker]

    def __init__(
        self,
        services: SyncServices,
        use_workers: bool | None = None,
        worker_count: int | None = None,
        serial_threshold: int | None = None,
        pool_factory: Callable[[], WorkerPool] | None = None,
    ) -> None:
        settings = services.settings
        self.services = services
        self.use_workers = settings.use_workers if use_workers is None else use_workers
        self.worker_count = settings.worker_count if worker_count is None else worker_count
        self.serial_threshold = settings.serial_threshold if serial_threshold is None else serial_threshold
        self.pool_factory = pool_factory or self.default_pool
        self._single_worker: SyncWorker | None = None

    @abstractmethod
    def fetch_items(self) -> list[dict[str, Any]]:
        raise NotImplementedError

    def after_sync(self, items: list[dict[str, Any]], outcomes: list[ItemOutcome]) -> None:
        """Hook run once the batch is processed, before the run closes."""

    def default_pool(self) -> WorkerPool:
        settings = self.services.settings
        return WorkerPool(
            self.worker_class.worker_type,
            max_workers=self.worker_count,
            temp_dir=settings.temp_dir,
            poll_interval=settings.poll_interval_seconds,
            status_interval=settings.progress_interval_seconds,
        )

    def make_worker(self, worker_id: int = 0, capture_failures: bool = True) -> SyncWorker:
        settings = self.services.settings
        return self.worker_class(
            worker_id,
            services=self.services,
            progress_interval=settings.progress_interval_seconds,
            item_delay=settings.item_delay_seconds,
            capture_failures=capture_failures,
        )

    def sync(self) -> SyncReport:
        stats = self.services.stats
        started_at = datetime.now(timezone.utc)
        run_id = stats.start_run(self.kind)
        logger.info("Starting %s sync run %s", self.kind, run_id)

        try:
            items = self.fetch_items()
            outcomes = self.dispatch(items) if items else []
            unreported = self.capture_unreported(items, outcomes)
            stats.log_outcomes(run_id, self.kind, outcomes)
            self.after_sync(items, outcomes)
            self.services.ledger.update_sync_state(self.kind, started_at)
        except InfrastructureError as exc:
            logger.error("%s sync run %s aborted: %s", self.kind, run_id, exc)
            stats.end_run(run_id, "aborted", 0, 0, 0, error_summary=str(exc))
            raise
        except Exception as exc:
            logger.exception("%s sync run %s failed", self.kind, run_id)
            stats.end_run(run_id, "failure", 0, 0, 0, error_summary=str(exc))
            raise

        failed = sum(1 for outcome in outcomes if outcome.status == FAILED)
        skipped = sum(1 for outcome in outcomes if outcome.status == SKIPPED)
        succeeded = len(outcomes) - failed
        status = run_status(succeeded, failed)
        stats.end_run(run_id, status, len(outcomes), succeeded, failed)
        logger.info(
            "%s sync run %s finished (%s): %s items, %s succeeded (%s skipped), %s failed",
            self.kind,
            run_id,
            status,
            len(items),
            succeeded,
            skipped,
            failed,
        )
        return SyncReport(
            run_id=run_id,
            kind=self.kind,
            status=status,
            total=len(items),
            succeeded=succeeded,
            skipped=skipped,
            failed=failed,
            unreported=unreported,
            outcomes=outcomes,
        )

    def dispatch(self, items: list[dict[str, Any]]) -> list[ItemOutcome]:
        if not self.use_workers or self.worker_count <= 1 or len(items) <= self.serial_threshold:
            return self.run_serial(items)

        result = self.pool_factory().process_items(items)
        if result.infrastructure_errors:
            raise InfrastructureError("Worker aborted: " + "; ".join(result.infrastructure_errors))
        outcomes = list(result.outcomes)
        for chunk in result.unspawned:
            logger.warning("Processing %s items of an unspawned chunk in-process", len(chunk))
            outcomes.extend(self.run_serial(chunk))
        return outcomes

    def run_serial(self, items: list[dict[str, Any]]) -> list[ItemOutcome]:
        worker = self.make_worker()
        worker.run(items)
        return worker.outcomes

    def capture_unreported(self, items: list[dict[str, Any]], outcomes: list[ItemOutcome]) -> int:
        worker = self.make_worker()
        # Counted per id, so repeated or empty ids each need their own outcome.
        reported = Counter(outcome.item_id for outcome in outcomes)
        missing = []
        for item in items:
            item_id = worker.item_id(item)
            if reported[item_id] > 0:
                reported[item_id] -= 1
            else:
                missing.append(item)
        for item in missing:
            item_id = worker.item_id(item)
            message = "No worker reported an outcome for this item"
            self.services.dead_letters.capture(self.kind, EXCEPTION, item_id, item, {"message": message})
            outcomes.append(ItemOutcome(item_id=item_id, operation="dispatch", status=FAILED, reason=EXCEPTION, message=message))
        if missing:
            logger.error("%s %s items were not reported by any worker and were dead-lettered", len(missing), self.kind)
        return len(missing)

    def process_single(self, item: dict[str, Any]) -> bool:
        """Replay one item through the per-item path without capturing a new dead letter.

        An item the ledger already maps is a no-op success: no remote call is made.
        """
        worker = self.single_worker()
        item_id = worker.item_id(item)
        remote_id = worker.mapped_remote_id(item)
        if remote_id:
            logger.info("%s %s is already mapped to %s; nothing to replay", self.kind, item_id, remote_id)
            return True

        worker.ensure_prepared()
        try:
            outcome = worker.process_item(item)
        except InfrastructureError:
            raise
        except Exception:
            logger.exception("Replay of %s %s raised", self.kind, item_id)
            return False
        if outcome.ok:
            logger.info("Replayed %s %s: %s %s", self.kind, item_id, outcome.operation, outcome.status)
        else:
            logger.error("Replay of %s %s failed (%s): %s", self.kind, item_id, outcome.reason, outcome.message)
        return outcome.ok

    def single_worker(self) -> SyncWorker:
        if self._single_worker is None:
            self._single_worker = self.make_worker(capture_failures=False)
        return self._single_worker
