"""Entry point of a worker process.

    python -m storesync.workers.runner <worker_type> <worker_id> <chunk_file> <result_file>

Exits 0 once the chunk has been processed and the final result written, 1 on
any startup or fatal error (an error result is still written when possible).
"""

from __future__ import annotations

import importlib
import logging
import signal
import sys
from pathlib import Path

from storesync.core.config import get_settings
from storesync.core.errors import InfrastructureError, WorkerStartupError
from storesync.core.files import read_json, write_json_atomic
from storesync.core.logging import configure_logging
from storesync.schemas.worker import WorkerResult
from storesync.workers.base import SyncWorker
from storesync.workers.orders import OrderSyncWorker
from storesync.workers.products import ProductSyncWorker


WORKER_TYPES: dict[str, type[SyncWorker]] = {
    ProductSyncWorker.worker_type: ProductSyncWorker,
    OrderSyncWorker.worker_type: OrderSyncWorker,
}

logger = logging.getLogger(__name__)


def resolve_worker_type(name: str) -> type[SyncWorker]:
    if name in WORKER_TYPES:
        return WORKER_TYPES[name]
    if ":" not in name:
        raise WorkerStartupError(f"Unknown worker type: {name}")
    module_name, _, class_name = name.partition(":")
    try:
        worker_cls = getattr(importlib.import_module(module_name), class_name)
    except (ImportError, AttributeError) as exc:
        raise WorkerStartupError(f"Cannot load worker type {name}: {exc}") from exc
    if not isinstance(worker_cls, type) or not issubclass(worker_cls, SyncWorker):
        raise WorkerStartupError(f"{name} is not a SyncWorker")
    return worker_cls


def load_chunk(path: Path) -> list[dict]:
    if not path.exists():
        raise WorkerStartupError(f"Chunk file not found: {path}")
    try:
        items = read_json(path)
    except ValueError as exc:
        raise WorkerStartupError(f"Chunk file {path} is not valid JSON: {exc}") from exc
    if not isinstance(items, list):
        raise WorkerStartupError(f"Chunk file {path} does not hold a list")
    return items


def write_error_result(result_path: Path, worker_id: int, worker_type: str, error: str) -> None:
    try:
        write_json_atomic(
            result_path,
            WorkerResult(worker_id=worker_id, worker_type=worker_type, final=True, error=error).model_dump(mode="json"),
        )
    except OSError as exc:
        logger.error("Could not write error result to %s: %s", result_path, exc)


def main(argv: list[str] | None = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    configure_logging(get_settings())
    if len(args) != 4:
        logger.error("Usage: python -m storesync.workers.runner <worker_type> <worker_id> <chunk_file> <result_file>")
        return 1

    worker_type, raw_id, chunk_file, result_file = args
    result_path = Path(result_file)
    try:
        worker_id = int(raw_id)
    except ValueError:
        write_error_result(result_path, 0, worker_type, f"Invalid worker id: {raw_id}")
        return 1

    try:
        worker_cls = resolve_worker_type(worker_type)
        items = load_chunk(Path(chunk_file))
        worker = worker_cls.create(worker_id, result_path=result_path)
    except Exception as exc:
        logger.error("Worker #%s failed to start: %s", worker_id, exc)
        write_error_result(result_path, worker_id, worker_type, str(exc))
        return 1

    signal.signal(signal.SIGTERM, lambda _signum, _frame: worker.stop())
    try:
        worker.run(items)
    except InfrastructureError as exc:
        logger.error("Worker #%s aborted: %s", worker_id, exc)
        worker.write_result(error=str(exc), final=True, infrastructure_error=True)
        return 1
    except Exception as exc:
        logger.exception("Worker #%s crashed", worker_id)
        worker.write_result(error=str(exc), final=True)
        return 1
    finally:
        worker.close()

    worker.write_result(final=True)
    return 0


if __name__ == "__main__":
    sys.exit(main())
