import os
from pathlib import Path

import pytest

from pool_workers import LedgerEchoWorker

from storesync.core.files import write_json_atomic
from storesync.engine.base import ReconciliationEngine
from storesync.schemas.worker import SUCCESS, VALIDATION_FAILED, ItemOutcome, WorkerResult
from storesync.services.ledger import PRODUCT
from storesync.workers.pool import MAX_WORKERS, WorkChunk, WorkerPool, partition


TESTS_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = TESTS_DIR.parent


@pytest.fixture()
def worker_env(tmp_path: Path) -> dict[str, str]:
    python_path = [str(TESTS_DIR), str(PROJECT_ROOT)]
    if os.environ.get("PYTHONPATH"):
        python_path.append(os.environ["PYTHONPATH"])
    return {
        **os.environ,
        "PYTHONPATH": os.pathsep.join(python_path),
        "STORESYNC_STORAGE_DIR": str(tmp_path / "storage"),
        "STORESYNC_DATABASE_URL": f"sqlite:///{tmp_path / 'workers.db'}",
        "STORESYNC_LOG_FILE": str(tmp_path / "logs" / "workers.log"),
    }


def test_partition_is_contiguous_and_ceil_sized():
    assert partition(list(range(5)), 2) == [[0, 1, 2], [3, 4]]
    assert partition(list(range(3)), 4) == [[0], [1], [2]]
    assert partition(list(range(4)), 1) == [[0, 1, 2, 3]]
    assert partition([], 3) == []


def test_worker_count_is_clamped(tmp_path):
    assert WorkerPool("EchoWorker", max_workers=0, temp_dir=tmp_path).max_workers == 1
    assert WorkerPool("EchoWorker", max_workers=1000, temp_dir=tmp_path).max_workers == MAX_WORKERS


def test_empty_batch_spawns_nothing(tmp_path):
    result = WorkerPool("EchoWorker", temp_dir=tmp_path / "temp").process_items([])

    assert result.outcomes == []
    assert result.worker_results == []


def test_pool_runs_chunks_in_separate_processes(tmp_path, worker_env):
    temp_dir = tmp_path / "temp"
    pool = WorkerPool(
        "pool_workers:EchoWorker",
        max_workers=2,
        temp_dir=temp_dir,
        poll_interval=0.05,
        status_interval=0.2,
        env=worker_env,
    )
    items = [{"id": index} for index in range(5)] + [{"id": 5, "fail": True}]

    result = pool.process_items(items)

    assert len(result.worker_results) == 2
    assert sorted(outcome.item_id for outcome in result.outcomes) == [str(index) for index in range(6)]
    assert len(result.data) == 5
    assert result.failed_items == [{"id": 5, "fail": True}]
    assert result.processed == 6
    assert all(worker_result.final for worker_result in result.worker_results)
    assert list(temp_dir.iterdir()) == []


def test_crashing_item_does_not_stop_its_chunk(tmp_path, worker_env):
    pool = WorkerPool("pool_workers:EchoWorker", max_workers=1, temp_dir=tmp_path / "temp", poll_interval=0.05, env=worker_env)

    result = pool.process_items([{"id": 1, "crash": True}, {"id": 2}])

    assert [outcome.reason for outcome in result.outcomes] == ["exception", None]
    assert len(result.data) == 1


def test_failed_worker_startup_contributes_nothing(tmp_path, worker_env):
    pool = WorkerPool("NoSuchWorker", max_workers=2, temp_dir=tmp_path / "temp", poll_interval=0.05, env=worker_env)

    result = pool.process_items([{"id": 1}, {"id": 2}])

    assert result.outcomes == []
    assert result.data == []
    assert result.unspawned == []
    assert len(result.errors) == 2
    assert all("Unknown worker type" in error for error in result.errors)
    assert result.infrastructure_errors == []


def test_unspawnable_chunks_are_handed_back(tmp_path):
    pool = WorkerPool(
        "pool_workers:EchoWorker",
        max_workers=2,
        temp_dir=tmp_path / "temp",
        python=str(tmp_path / "no-such-python"),
    )

    result = pool.process_items([{"id": 1}, {"id": 2}, {"id": 3}])

    assert result.unspawned == [[{"id": 1}, {"id": 2}], [{"id": 3}]]
    assert result.outcomes == []


def _chunk(tmp_path: Path) -> WorkChunk:
    return WorkChunk(
        worker_id=0,
        items=[{"id": 1}],
        chunk_path=tmp_path / "worker_x_0_chunk.json",
        result_path=tmp_path / "worker_x_0_result.json",
        returncode=0,
    )


def test_malformed_result_file_counts_as_nothing(tmp_path):
    pool = WorkerPool("EchoWorker", temp_dir=tmp_path)
    chunk = _chunk(tmp_path)

    assert pool._read_result(chunk) is None
    chunk.result_path.write_text("{truncated", encoding="utf-8")
    assert pool._read_result(chunk) is None
    write_json_atomic(chunk.result_path, {"unexpected": True})
    assert pool._read_result(chunk) is None


def test_error_result_keeps_finished_items(tmp_path):
    pool = WorkerPool("EchoWorker", temp_dir=tmp_path)
    chunk = _chunk(tmp_path)
    result = WorkerResult(
        worker_id=0,
        worker_type="EchoWorker",
        processed=1,
        outcomes=[ItemOutcome(item_id="1", operation="echo", status=SUCCESS)],
        final=True,
        error="disk gone",
        infrastructure_error=True,
    )
    write_json_atomic(chunk.result_path, result.model_dump(mode="json"))

    read = pool._read_result(chunk)

    assert read.error == "disk gone"
    assert [outcome.item_id for outcome in read.outcomes] == ["1"]
    assert pool.read_progress(chunk) is None


def test_worker_aborting_mid_chunk_reports_what_it_finished(tmp_path, worker_env):
    pool = WorkerPool("pool_workers:EchoWorker", max_workers=1, temp_dir=tmp_path / "temp", poll_interval=0.05, env=worker_env)

    result = pool.process_items([{"id": 1}, {"id": 2}, {"id": 3, "infra": True}, {"id": 4}])

    assert [outcome.item_id for outcome in result.outcomes] == ["1", "2"]
    assert result.data == [{"id": 1}, {"id": 2}]
    assert result.infrastructure_errors == ["disk gone"]
    assert result.errors == ["worker #0: disk gone"]


class LedgerEchoReconciler(ReconciliationEngine):
    kind = PRODUCT
    worker_class = LedgerEchoWorker

    def __init__(self, *args, items=(), **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.items = list(items)

    def fetch_items(self):
        return self.items


def test_engine_sync_fans_out_to_worker_processes(services, settings, monkeypatch, tmp_path):
    monkeypatch.setenv("PYTHONPATH", os.pathsep.join([str(TESTS_DIR), str(PROJECT_ROOT)]))
    monkeypatch.setenv("STORESYNC_STORAGE_DIR", str(settings.storage_dir))
    monkeypatch.setenv("STORESYNC_DATABASE_URL", settings.database_url)
    monkeypatch.setenv("STORESYNC_LOG_FILE", str(tmp_path / "logs" / "workers.log"))
    services.settings = settings.model_copy(update={"poll_interval_seconds": 0.05})
    engine = LedgerEchoReconciler(
        services,
        use_workers=True,
        worker_count=2,
        serial_threshold=0,
        items=[{"id": "A"}, {"id": "B", "fail": True}, {"id": "C"}],
    )

    report = engine.sync()

    assert report.total == 3
    assert report.status == "partial"
    assert report.succeeded == 2
    assert report.failed == 1
    assert report.unreported == 0
    assert services.ledger.get_remote_id(PRODUCT, "A") == "remote-A"
    assert services.ledger.get_remote_id(PRODUCT, "C") == "remote-C"
    letters = [services.dead_letters.load(path) for path in services.dead_letters.pending(PRODUCT)]
    assert [(letter.item_id, letter.reason) for letter in letters] == [("B", VALIDATION_FAILED)]
    assert len(services.stats.run_details(report.run_id)) == 3
    assert list(settings.temp_dir.iterdir()) == []
