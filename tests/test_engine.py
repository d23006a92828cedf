from datetime import datetime, timedelta, timezone

import pytest

from conftest import make_order

from storesync.core.errors import InfrastructureError, LedgerUnavailableError
from storesync.engine.base import run_status
from storesync.engine.orders import OrderReconciler
from storesync.engine.products import ProductReconciler
from storesync.schemas.worker import EXCEPTION, FAILED, VALIDATION_FAILED, ItemOutcome
from storesync.services.ledger import ORDER, PRODUCT
from storesync.workers.pool import PoolResult, partition


class InProcessPool:
    """Runs each chunk with a fresh worker in this process, like the real pool does in children."""

    def __init__(self, engine, workers: int, drop_chunks: tuple[int, ...] = (), unspawned: tuple[int, ...] = ()) -> None:
        self.engine = engine
        self.workers = workers
        self.drop_chunks = drop_chunks
        self.unspawned = unspawned
        self.chunk_sizes: list[int] = []

    def process_items(self, items):
        result = PoolResult()
        for worker_id, chunk in enumerate(partition(items, self.workers)):
            self.chunk_sizes.append(len(chunk))
            if worker_id in self.unspawned:
                result.unspawned.append(chunk)
                continue
            worker = self.engine.make_worker(worker_id)
            try:
                worker.run(chunk)
                worker_result = worker.result(final=True)
            except InfrastructureError as exc:
                worker_result = worker.result(error=str(exc), final=True, infrastructure_error=True)
            if worker_id in self.drop_chunks:
                continue
            result.worker_results.append(worker_result)
            result.data.extend(worker_result.data)
            result.failed_items.extend(worker_result.failed_items)
            result.outcomes.extend(worker_result.outcomes)
            if worker_result.infrastructure_error:
                result.infrastructure_errors.append(worker_result.error)
        return result


def _stock(supplier, count: int = 3) -> None:
    for index in range(1, count + 1):
        product_id = f"p-{index}"
        supplier.products.append({"product_id": product_id})
        supplier.details[product_id] = {"product_id": product_id, "sku": f"SKU-{index}", "name": f"Item {index}", "price": "10", "qty": 4}


def _pooled(services, workers: int = 2, **pool_kwargs):
    engine = ProductReconciler(services, use_workers=True, worker_count=workers, serial_threshold=0)
    pool = InProcessPool(engine, workers, **pool_kwargs)
    engine.pool_factory = lambda: pool
    return engine, pool


def test_run_status():
    assert run_status(3, 0) == "success"
    assert run_status(2, 1) == "partial"
    assert run_status(0, 2) == "failure"


def test_product_sync_through_two_workers(services, supplier, storefront):
    _stock(supplier, 3)
    engine, pool = _pooled(services)

    report = engine.sync()

    assert pool.chunk_sizes == [2, 1]
    assert report.status == "success"
    assert report.total == 3
    assert report.succeeded == 3
    assert report.failed == 0
    assert len(storefront.created) == 3
    for index in range(1, 4):
        assert services.ledger.get_remote_id(PRODUCT, f"p-{index}") is not None

    run = services.stats.get_run(report.run_id)
    assert run.status == "success"
    assert run.items_processed == 3
    assert len(services.stats.run_details(report.run_id)) == 3


def test_validation_failure_is_partial_and_dead_lettered(services, supplier, storefront):
    _stock(supplier, 3)
    supplier.details["p-2"]["sku"] = ""
    engine, _ = _pooled(services)

    report = engine.sync()

    assert report.status == "partial"
    assert report.succeeded == 2
    assert report.failed == 1
    assert len(storefront.created) == 2
    letters = services.dead_letters.pending(PRODUCT)
    assert len(letters) == 1
    record = services.dead_letters.load(letters[0])
    assert record.item_id == "p-2"
    assert record.reason == VALIDATION_FAILED
    failed = services.stats.run_details(report.run_id, status="failed")
    assert [detail.item_id for detail in failed] == ["p-2"]


def test_replaying_a_batch_creates_nothing_new(services, supplier, storefront):
    _stock(supplier, 3)
    first = ProductReconciler(services).sync()
    second = ProductReconciler(services).sync()

    assert first.status == second.status == "success"
    assert len(storefront.created) == 3
    assert {outcome.operation for outcome in second.outcomes} == {"update"}
    for index in range(1, 4):
        assert len(services.ledger.history(PRODUCT, f"p-{index}")) == 1


def test_unreported_items_are_dead_lettered(services, supplier):
    _stock(supplier, 4)
    engine, _ = _pooled(services, drop_chunks=(1,))

    report = engine.sync()

    assert report.unreported == 2
    assert report.failed == 2
    reasons = {services.dead_letters.load(path).reason for path in services.dead_letters.pending(PRODUCT)}
    assert reasons == {EXCEPTION}


def test_unspawned_chunk_runs_in_process(services, supplier, storefront):
    _stock(supplier, 4)
    engine, _ = _pooled(services, unspawned=(0,))

    report = engine.sync()

    assert report.status == "success"
    assert report.succeeded == 4
    assert report.unreported == 0


def test_small_batch_skips_the_pool(services, supplier):
    _stock(supplier, 2)
    engine = ProductReconciler(services, use_workers=True, worker_count=4, serial_threshold=10)
    engine.pool_factory = lambda: pytest.fail("pool should not be used")

    assert engine.sync().succeeded == 2


def test_empty_batch_still_records_a_run(services):
    report = ProductReconciler(services).sync()

    assert report.total == 0
    assert report.status == "success"
    assert services.stats.get_run(report.run_id).status == "success"


def test_ledger_outage_aborts_the_run(services, supplier, monkeypatch):
    _stock(supplier, 2)

    def broken(*_args, **_kwargs):
        raise LedgerUnavailableError("database is locked")

    monkeypatch.setattr(services.ledger, "save_mapping", broken)
    engine = ProductReconciler(services)

    with pytest.raises(LedgerUnavailableError):
        engine.sync()

    run = services.stats.recent_runs(limit=1)[0]
    assert run.status == "aborted"
    assert "database is locked" in run.error_summary


def test_sync_moves_the_watermark(services):
    before = services.ledger.get_last_sync_time(PRODUCT)
    ProductReconciler(services).sync()

    assert services.ledger.get_last_sync_time(PRODUCT) > before


def test_order_sync_sends_supplier_orders_only(services, supplier, storefront):
    storefront.orders["1001"] = make_order(1001)
    storefront.orders["1002"] = make_order(
        1002,
        line_items=[{"sku": "MUG", "name": "Mug", "quantity": 1, "price": "5.00", "vendor": "Acme"}],
    )

    report = OrderReconciler(services, propagate_updates=False).sync()

    assert report.total == 1
    assert report.succeeded == 1
    assert [order["id"] for order in supplier.created] == ["shopify_1001"]


def test_supplier_updates_flow_back_to_storefront(services, supplier, storefront):
    storefront.orders["1001"] = make_order(1001)
    supplier.orders = [{"order_id": "shopify_1001", "status": "sent", "tracking_number": "TRK-1"}]
    engine = OrderReconciler(services)

    assert engine.propagate_supplier_updates() == 1

    order = storefront.orders["1001"]
    assert order["fulfillments"][0]["tracking_info"]["number"] == "TRK-1"
    assert "Tracking number updated: TRK-1" in order["note"]
    assert "Supplier order status updated to: sent" in order["note"]
    assert services.ledger.get_local_id(ORDER, "shopify_1001") == "1001"

    assert engine.propagate_supplier_updates() == 0
    assert len(order["fulfillments"]) == 1


def test_process_single_is_a_noop_for_mapped_items(services, supplier):
    services.ledger.save_mapping(ORDER, "1001", "shopify_1001")

    assert OrderReconciler(services).process_single(make_order(1001)) is True
    assert supplier.created == []


def test_worker_infrastructure_failure_aborts_pooled_run(services, supplier, storefront, monkeypatch):
    _stock(supplier, 4)
    save_mapping = services.ledger.save_mapping

    def flaky(kind, local_id, *args, **kwargs):
        if local_id == "p-3":
            raise LedgerUnavailableError("database is locked")
        return save_mapping(kind, local_id, *args, **kwargs)

    monkeypatch.setattr(services.ledger, "save_mapping", flaky)
    engine, _ = _pooled(services)

    with pytest.raises(InfrastructureError, match="database is locked"):
        engine.sync()

    run = services.stats.recent_runs(limit=1)[0]
    assert run.status == "aborted"
    assert services.ledger.get_last_sync_time(PRODUCT) < datetime.now(timezone.utc) - timedelta(hours=23)
    assert services.ledger.get_remote_id(PRODUCT, "p-1") is not None


def test_partial_chunk_outcomes_are_not_dead_lettered_again(services, supplier):
    _stock(supplier, 3)
    supplier.details["p-1"]["sku"] = ""
    engine, _ = _pooled(services, workers=1)
    items = [{"product_id": "p-1"}, {"product_id": "p-2"}, {"product_id": "p-3"}]
    worker = engine.make_worker()
    worker.run(items[:2])
    outcomes = list(worker.outcomes)

    missing = engine.capture_unreported(items, outcomes)

    assert missing == 1
    letters = [services.dead_letters.load(path) for path in services.dead_letters.pending(PRODUCT)]
    assert sorted((letter.item_id, letter.reason) for letter in letters) == [
        ("p-1", VALIDATION_FAILED),
        ("p-3", EXCEPTION),
    ]
    assert [outcome.status for outcome in outcomes] == ["failed", "success", "failed"]


def test_items_without_ids_are_each_accounted_for(services):
    engine = OrderReconciler(services, propagate_updates=False)
    items = [{"note": "a"}, {"note": "b"}, {"id": 7}]
    outcomes = [ItemOutcome(item_id="", operation="validate", status=FAILED, reason=VALIDATION_FAILED)]

    assert engine.capture_unreported(items, outcomes) == 2
    assert sorted(outcome.item_id for outcome in outcomes[1:]) == ["", "7"]
    assert len(services.dead_letters.pending(ORDER)) == 2


def test_order_missing_shipping_address_is_dead_lettered(services, supplier, storefront):
    storefront.orders["1001"] = make_order(1001)
    storefront.orders["1002"] = make_order(1002, shipping_address=None)
    storefront.orders["1003"] = make_order(1003)
    engine = OrderReconciler(services, use_workers=True, worker_count=2, serial_threshold=0, propagate_updates=False)
    engine.pool_factory = lambda: InProcessPool(engine, 2)

    report = engine.sync()

    assert report.status == "partial"
    assert report.succeeded == 2
    assert report.failed == 1
    assert sorted(order["id"] for order in supplier.created) == ["shopify_1001", "shopify_1003"]
    letters = services.dead_letters.pending(ORDER)
    assert len(letters) == 1
    record = services.dead_letters.load(letters[0])
    assert record.item_id == "1002"
    assert record.reason == VALIDATION_FAILED
    errors = record.details["errors"]
    assert "Missing required address field: Address" in errors
    assert "Missing required address field: City" in errors
    assert "Missing required address field: Postal code" in errors
