from __future__ import annotations

import logging
import math
import os
import subprocess
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable
from uuid import uuid4

from storesync.core.files import read_json, write_json_atomic
from storesync.schemas.worker import ItemOutcome, ProgressSnapshot, WorkerResult


MIN_WORKERS = 1
MAX_WORKERS = 32
RUNNER_MODULE = "storesync.workers.runner"

logger = logging.getLogger(__name__)


def partition(items: list[Any], workers: int) -> list[list[Any]]:
    """Split ``items`` into at most ``workers`` contiguous chunks of ``ceil(n / workers)``."""
    if not items:
        return []
    size = math.ceil(len(items) / max(1, workers))
    return [items[start:start + size] for start in range(0, len(items), size)]


@dataclass
class WorkChunk:
    worker_id: int
    items: list[dict[str, Any]]
    chunk_path: Path
    result_path: Path
    process: subprocess.Popen | None = None
    returncode: int | None = None

    @property
    def running(self) -> bool:
        return self.process is not None and self.returncode is None


@dataclass
class PoolResult:
    worker_results: list[WorkerResult] = field(default_factory=list)
    data: list[dict[str, Any]] = field(default_factory=list)
    failed_items: list[dict[str, Any]] = field(default_factory=list)
    outcomes: list[ItemOutcome] = field(default_factory=list)
    unspawned: list[list[dict[str, Any]]] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    infrastructure_errors: list[str] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return sum(result.processed for result in self.worker_results)


class WorkerPool:
    """Fans a batch out to independent worker processes and gathers their results.

    Each worker gets one chunk file and one result file. The pool never writes a
    chunk after spawning its worker, and reads a result file as authoritative
    only once that worker's process has exited.
    """

    def __init__(
        self,
        worker_type: str,
        max_workers: int = 4,
        temp_dir: Path = Path("./storage/temp"),
        poll_interval: float = 1.0,
        status_interval: float = 5.0,
        python: str | None = None,
        env: dict[str, str] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.worker_type = worker_type
        self.max_workers = max(MIN_WORKERS, min(MAX_WORKERS, max_workers))
        self.temp_dir = Path(temp_dir)
        self.poll_interval = poll_interval
        self.status_interval = status_interval
        self.python = python or sys.executable
        self.env = env
        self.sleep = sleep

    def process_items(self, items: list[dict[str, Any]]) -> PoolResult:
        if not items:
            logger.warning("No items to process")
            return PoolResult()

        self.temp_dir.mkdir(parents=True, exist_ok=True)
        run_token = uuid4().hex[:8]
        chunks = [
            WorkChunk(
                worker_id=worker_id,
                items=chunk,
                chunk_path=self.temp_dir / f"worker_{run_token}_{worker_id}_chunk.json",
                result_path=self.temp_dir / f"worker_{run_token}_{worker_id}_result.json",
            )
            for worker_id, chunk in enumerate(partition(items, self.max_workers))
        ]
        logger.info("Processing %s items with %s %s workers", len(items), len(chunks), self.worker_type)

        try:
            for chunk in chunks:
                self._spawn(chunk)
            self._wait(chunks)
            return self._collect(chunks)
        finally:
            self._terminate(chunks)
            self._cleanup(chunks)

    def _spawn(self, chunk: WorkChunk) -> None:
        command = [
            self.python,
            "-m",
            RUNNER_MODULE,
            self.worker_type,
            str(chunk.worker_id),
            str(chunk.chunk_path),
            str(chunk.result_path),
        ]
        try:
            write_json_atomic(chunk.chunk_path, chunk.items)
            chunk.process = subprocess.Popen(command, env=self.env, stdout=subprocess.DEVNULL)
        except OSError as exc:
            logger.error("Failed to start worker #%s (%s items): %s", chunk.worker_id, len(chunk.items), exc)
            chunk.process = None
            return
        logger.info("Started worker #%s with pid %s for %s items", chunk.worker_id, chunk.process.pid, len(chunk.items))

    def _wait(self, chunks: list[WorkChunk]) -> None:
        last_status = time.monotonic()
        while True:
            for chunk in chunks:
                if chunk.running:
                    code = chunk.process.poll()
                    if code is not None:
                        chunk.returncode = code
                        logger.info("Worker #%s finished with exit code %s", chunk.worker_id, code)
            running = [chunk for chunk in chunks if chunk.running]
            if not running:
                return
            if time.monotonic() - last_status >= self.status_interval:
                last_status = time.monotonic()
                self._log_status(running)
            self.sleep(self.poll_interval)

    def _log_status(self, running: list[WorkChunk]) -> None:
        for chunk in running:
            snapshot = self.read_progress(chunk)
            if snapshot is None:
                logger.info("Worker #%s: running, no progress reported yet", chunk.worker_id)
                continue
            eta = snapshot.estimated_time_remaining
            if not isinstance(eta, str):
                eta = f"{eta}s"
            logger.info(
                "Worker #%s: %s/%s items (%s%%), %s items/s, eta %s",
                chunk.worker_id,
                snapshot.processed_items,
                snapshot.total_items,
                snapshot.progress_percent,
                snapshot.items_per_second,
                eta,
            )

    def read_progress(self, chunk: WorkChunk) -> ProgressSnapshot | None:
        """Advisory only: the worker may be mid-run."""
        try:
            return WorkerResult.model_validate(read_json(chunk.result_path)).progress
        except (OSError, ValueError):
            return None

    def _collect(self, chunks: list[WorkChunk]) -> PoolResult:
        result = PoolResult()
        for chunk in chunks:
            if chunk.process is None:
                result.unspawned.append(chunk.items)
                continue
            worker_result = self._read_result(chunk)
            if worker_result is None:
                continue
            result.worker_results.append(worker_result)
            result.data.extend(worker_result.data)
            result.failed_items.extend(worker_result.failed_items)
            result.outcomes.extend(worker_result.outcomes)
            if worker_result.error:
                result.errors.append(f"worker #{chunk.worker_id}: {worker_result.error}")
                if worker_result.infrastructure_error:
                    result.infrastructure_errors.append(worker_result.error)
        logger.info(
            "Workers finished: %s succeeded, %s failed, %s unspawned chunks",
            len(result.data),
            len(result.failed_items),
            len(result.unspawned),
        )
        return result

    def _read_result(self, chunk: WorkChunk) -> WorkerResult | None:
        if chunk.returncode not in (0, None):
            logger.warning("Worker #%s exited with code %s", chunk.worker_id, chunk.returncode)
        if not chunk.result_path.exists():
            logger.error("Worker #%s left no result file", chunk.worker_id)
            return None
        try:
            worker_result = WorkerResult.model_validate(read_json(chunk.result_path))
        except (OSError, ValueError) as exc:
            logger.error("Worker #%s result file is unreadable: %s", chunk.worker_id, exc)
            return None
        if worker_result.error:
            # Items finished before the error still count.
            logger.error(
                "Worker #%s reported an error after %s of %s items: %s",
                chunk.worker_id,
                len(worker_result.outcomes),
                len(chunk.items),
                worker_result.error,
            )
        return worker_result

    def _terminate(self, chunks: list[WorkChunk]) -> None:
        for chunk in chunks:
            if chunk.running and chunk.process.poll() is None:
                logger.warning("Stopping worker #%s", chunk.worker_id)
                chunk.process.terminate()
                try:
                    chunk.process.wait(timeout=10)
                except subprocess.TimeoutExpired:
                    chunk.process.kill()

    def _cleanup(self, chunks: list[WorkChunk]) -> None:
        for chunk in chunks:
            for path in (chunk.chunk_path, chunk.result_path):
                try:
                    os.remove(path)
                except FileNotFoundError:
                    continue
