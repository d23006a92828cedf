import logging
from pathlib import Path
from typing import Any

import pytest
from sqlalchemy.orm import Session, sessionmaker

from storesync.clients.base import StorefrontClient, SupplierClient, SupplierResponse
from storesync.context import SyncServices
from storesync.core.cache import ResponseCache
from storesync.core.config import Settings, get_settings
from storesync.core.errors import StorefrontError
from storesync.db.base import Base
from storesync.db.session import build_engine, build_session_factory, get_engine, get_session_factory
from storesync.services.dead_letters import DeadLetterStore
from storesync.services.ledger import Ledger
from storesync.services.stats import SyncStats


class FakeSupplier(SupplierClient):
    def __init__(self) -> None:
        self.products: list[dict[str, Any]] = []
        self.details: dict[str, dict[str, Any]] = {}
        self.orders: list[dict[str, Any]] = []
        self.create_response: Any = {"api_response": "SUCCESS"}
        self.update_response: Any = {"api_response": "UPDATE_SUCCESS"}
        self.detail_calls: list[str] = []
        self.created: list[dict[str, Any]] = []
        self.updated: list[dict[str, Any]] = []
        self.order_queries: list[dict[str, Any] | None] = []

    def list_items(self) -> list[dict[str, Any]]:
        return list(self.products)

    def get_item_detail(self, item_id: str) -> dict[str, Any] | None:
        self.detail_calls.append(str(item_id))
        return self.details.get(str(item_id))

    def create_order(self, order: dict[str, Any]) -> SupplierResponse:
        self.created.append(order)
        return SupplierResponse.from_raw(self.create_response)

    def update_order(self, order: dict[str, Any]) -> SupplierResponse:
        self.updated.append(order)
        return SupplierResponse.from_raw(self.update_response)

    def get_orders(self, filters: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        self.order_queries.append(filters)
        return list(self.orders)


class FakeStorefront(StorefrontClient):
    def __init__(self) -> None:
        self.products: dict[str, dict[str, Any]] = {}
        self.orders: dict[str, dict[str, Any]] = {}
        self.inventory: dict[int, int] = {}
        self.created: list[dict[str, Any]] = []
        self.create_error: StorefrontError | None = None
        self._next_id = 5000

    def add_product(self, sku: str, price: str = "10.00") -> dict[str, Any]:
        return self.create_item({"title": sku, "status": "active", "variants": [{"sku": sku, "price": price}]}, record=False)

    def list_items(self, params: dict[str, Any] | None = None) -> tuple[list[dict[str, Any]], str | None]:
        return list(self.products.values()), None

    def get_item(self, item_id: str | int) -> dict[str, Any] | None:
        return self.products.get(str(item_id))

    def create_item(self, item: dict[str, Any], record: bool = True) -> dict[str, Any]:
        if self.create_error is not None:
            raise self.create_error
        self._next_id += 1
        product = {**item, "id": self._next_id}
        product["variants"] = [
            {**variant, "id": self._next_id * 10 + i, "inventory_item_id": self._next_id * 100 + i}
            for i, variant in enumerate(item.get("variants") or [])
        ]
        self.products[str(product["id"])] = product
        if record:
            self.created.append(product)
        return product

    def update_item(self, item_id: str | int, item: dict[str, Any]) -> dict[str, Any]:
        product = self.products[str(item_id)]
        if "status" in item:
            product["status"] = item["status"]
        for change in item.get("variants") or []:
            for variant in product["variants"]:
                if variant["id"] == change.get("id"):
                    variant.update(change)
        return product

    def update_inventory(self, inventory_item_id: int, quantity: int) -> dict[str, Any]:
        self.inventory[inventory_item_id] = quantity
        return {"inventory_item_id": inventory_item_id, "available": quantity}

    def list_orders(self, params: dict[str, Any] | None = None) -> tuple[list[dict[str, Any]], str | None]:
        params = params or {}
        orders = list(self.orders.values())
        if "name" in params:
            orders = [order for order in orders if f"#{order.get('order_number')}" == params["name"]]
        return orders, None

    def get_order(self, order_id: str | int) -> dict[str, Any] | None:
        return self.orders.get(str(order_id))

    def update_order(self, order_id: str | int, data: dict[str, Any]) -> dict[str, Any]:
        order = self.orders[str(order_id)]
        order.update(data)
        return order

    def create_fulfillment(self, order_id: str | int, data: dict[str, Any]) -> dict[str, Any]:
        fulfillment = {**data, "tracking_number": (data.get("tracking_info") or {}).get("number")}
        self.orders[str(order_id)].setdefault("fulfillments", []).append(fulfillment)
        return fulfillment


def make_order(order_id: int = 1001, **overrides: Any) -> dict[str, Any]:
    order = {
        "id": order_id,
        "order_number": order_id,
        "created_at": "2026-10-18T10:00:00+00:00",
        "currency": "EUR",
        "email": "jane@example.com",
        "customer": {"first_name": "Jane", "last_name": "Doe", "email": "jane@example.com"},
        "shipping_address": {
            "first_name": "Jane",
            "last_name": "Doe",
            "address1": "1 Main Street",
            "zip": "00-001",
            "city": "Warsaw",
            "country": "Poland",
            "country_code": "PL",
            "phone": "+48123456789",
        },
        "line_items": [
            {"product_id": 1, "sku": "SKU-1", "name": "Whey 2kg", "quantity": 2, "price": "39.90", "vendor": "Powerbody"},
        ],
        "fulfillment_status": None,
        "cancelled_at": None,
    }
    order.update(overrides)
    return order


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        storage_dir=tmp_path / "storage",
        database_url=f"sqlite:///{tmp_path / 'storesync.db'}",
        item_delay_seconds=0,
        progress_interval_seconds=0,
        use_workers=False,
        log_file=None,
    )


@pytest.fixture()
def session_factory(settings: Settings) -> sessionmaker[Session]:
    engine = build_engine(settings.database_url)
    Base.metadata.create_all(bind=engine)
    try:
        yield build_session_factory(engine)
    finally:
        engine.dispose()


@pytest.fixture()
def supplier() -> FakeSupplier:
    return FakeSupplier()


@pytest.fixture()
def storefront() -> FakeStorefront:
    return FakeStorefront()


@pytest.fixture()
def services(
    settings: Settings,
    session_factory: sessionmaker[Session],
    supplier: FakeSupplier,
    storefront: FakeStorefront,
) -> SyncServices:
    ttl_seconds = settings.cache_ttl_hours * 3600
    return SyncServices(
        settings=settings,
        ledger=Ledger(session_factory, cache_ttl_seconds=ttl_seconds),
        cache=ResponseCache(settings.cache_dir, ttl_seconds=ttl_seconds),
        dead_letters=DeadLetterStore(settings.dead_letter_dir),
        stats=SyncStats(session_factory),
        supplier=supplier,
        storefront=storefront,
    )


@pytest.fixture()
def app_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    """Points the process-wide settings at a scratch directory."""
    storage = tmp_path / "app-storage"
    monkeypatch.setenv("STORESYNC_STORAGE_DIR", str(storage))
    monkeypatch.setenv("STORESYNC_DATABASE_URL", f"sqlite:///{tmp_path / 'app.db'}")
    monkeypatch.setenv("STORESYNC_LOG_FILE", str(tmp_path / "logs" / "app.log"))
    monkeypatch.setenv("STORESYNC_ADMIN_TOKEN", "test-admin-token")
    caches = (get_settings, get_engine, get_session_factory)
    for cached in caches:
        cached.cache_clear()
    yield storage
    for cached in caches:
        cached.cache_clear()
    app_logger = logging.getLogger("storesync")
    for handler in list(app_logger.handlers):
        app_logger.removeHandler(handler)
        handler.close()
    app_logger.propagate = True
