from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

from storesync.core.errors import InfrastructureError
from storesync.core.files import write_json_atomic
from storesync.schemas.worker import EXCEPTION, FAILED, UNKNOWN_ETA, ItemOutcome, ProgressSnapshot, WorkerResult

if TYPE_CHECKING:
    from storesync.context import SyncServices


class SyncWorker(ABC):
    """Processes one chunk of items, strictly in order, inside a single process.

    A failing item never stops its siblings. Only infrastructure errors (ledger
    or cache unusable) escape ``run``.
    """

    worker_type: str = "base"
    kind: str = "item"

    def __init__(
        self,
        worker_id: int,
        services: SyncServices | None = None,
        result_path: Path | None = None,
        progress_interval: float = 5.0,
        item_delay: float = 0.1,
        capture_failures: bool = True,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.worker_id = worker_id
        self.services = services
        self.result_path = result_path
        self.progress_interval = progress_interval
        self.item_delay = item_delay
        self.capture_failures = capture_failures
        self.clock = clock
        self.sleep = sleep
        self.logger = logging.getLogger(f"storesync.worker.{worker_id}")

        self.total_items = 0
        self.processed_items = 0
        self.succeeded: list[dict[str, Any]] = []
        self.failed: list[dict[str, Any]] = []
        self.outcomes: list[ItemOutcome] = []
        self._started_at: float | None = None
        self._last_progress_at: float | None = None
        self._progress: ProgressSnapshot | None = None
        self._stop_requested = False
        self._prepared = False

    @classmethod
    def create(cls, worker_id: int, result_path: Path | None = None) -> SyncWorker:
        """Build a worker with its own service handles, as the runner process does."""
        from storesync.context import SyncServices
        from storesync.core.config import get_settings

        settings = get_settings()
        return cls(
            worker_id,
            services=SyncServices.from_settings(settings),
            result_path=result_path,
            progress_interval=settings.progress_interval_seconds,
            item_delay=settings.item_delay_seconds,
        )

    def item_id(self, item: dict[str, Any]) -> str:
        return str(item.get("id", ""))

    def mapped_remote_id(self, item: dict[str, Any]) -> str | None:
        """The counterpart already recorded in the ledger, if any."""
        return None

    def prepare(self) -> None:
        """Runs once before the first item."""

    @abstractmethod
    def process_item(self, item: dict[str, Any]) -> ItemOutcome:
        raise NotImplementedError

    def ensure_prepared(self) -> None:
        if not self._prepared:
            self.prepare()
            self._prepared = True

    def stop(self) -> None:
        self._stop_requested = True

    def run(self, items: list[dict[str, Any]]) -> dict[str, list[dict[str, Any]]]:
        self.total_items = len(items)
        self._started_at = self.clock()
        self.logger.info("Starting %s worker #%s with %s items", self.worker_type, self.worker_id, self.total_items)
        self.ensure_prepared()

        for index, item in enumerate(items):
            if self._stop_requested:
                self.logger.info("Worker #%s stopping as requested", self.worker_id)
                break

            try:
                outcome = self.process_item(item)
            except InfrastructureError as exc:
                self.write_result(error=str(exc), infrastructure_error=True)
                raise
            except Exception as exc:
                self.logger.exception("Error processing %s %s", self.kind, self.item_id(item))
                outcome = ItemOutcome(
                    item_id=self.item_id(item),
                    operation="process",
                    status=FAILED,
                    reason=EXCEPTION,
                    message=str(exc),
                )
            self.record(item, outcome)

            self.processed_items += 1
            self.refresh_progress(force=index == len(items) - 1)
            self.write_result()
            if self.item_delay > 0 and index < len(items) - 1:
                self.sleep(self.item_delay)

        self.logger.info(
            "Worker #%s completed: %s succeeded, %s failed",
            self.worker_id,
            len(self.succeeded),
            len(self.failed),
        )
        return {"success": self.succeeded, "failed": self.failed}

    def record(self, item: dict[str, Any], outcome: ItemOutcome) -> None:
        self.outcomes.append(outcome)
        if outcome.ok:
            self.succeeded.append(item)
            return
        self.failed.append(item)
        if self.capture_failures and self.services is not None:
            details = {"message": outcome.message, "operation": outcome.operation, **outcome.details}
            self.services.dead_letters.capture(self.kind, outcome.reason or EXCEPTION, outcome.item_id, item, details)

    def status(self) -> ProgressSnapshot:
        now = self.clock()
        elapsed = now - self._started_at if self._started_at is not None else 0.0
        rate = self.processed_items / elapsed if elapsed > 0 else 0.0
        remaining = self.total_items - self.processed_items
        percent = round(self.processed_items / self.total_items * 100, 1) if self.total_items else 0.0
        return ProgressSnapshot(
            worker_id=self.worker_id,
            processed_items=self.processed_items,
            total_items=self.total_items,
            progress_percent=percent,
            elapsed_time=round(elapsed, 2),
            items_per_second=round(rate, 2),
            estimated_time_remaining=round(remaining / rate, 1) if rate > 0 else UNKNOWN_ETA,
        )

    def refresh_progress(self, force: bool = False) -> None:
        now = self.clock()
        if not force and self._last_progress_at is not None and now - self._last_progress_at < self.progress_interval:
            return
        self._last_progress_at = now
        self._progress = self.status()
        self.logger.info(
            "Worker #%s progress: %s/%s (%s%%), %s items/s",
            self.worker_id,
            self._progress.processed_items,
            self._progress.total_items,
            self._progress.progress_percent,
            self._progress.items_per_second,
        )

    def result(self, error: str | None = None, final: bool = False, infrastructure_error: bool = False) -> WorkerResult:
        return WorkerResult(
            worker_id=self.worker_id,
            worker_type=self.worker_type,
            total=self.total_items,
            processed=self.processed_items,
            success=len(self.succeeded),
            failed=len(self.failed),
            data=self.succeeded,
            failed_items=self.failed,
            outcomes=self.outcomes,
            progress=self._progress,
            final=final,
            error=error,
            infrastructure_error=infrastructure_error,
        )

    def write_result(self, error: str | None = None, final: bool = False, infrastructure_error: bool = False) -> None:
        if self.result_path is None:
            return
        result = self.result(error=error, final=final, infrastructure_error=infrastructure_error)
        write_json_atomic(self.result_path, result.model_dump(mode="json"))

    def close(self) -> None:
        if self.services is not None:
            self.services.close()
