from __future__ import annotations

from typing import Any

from storesync.core.errors import StorefrontError
from storesync.mapping.products import (
    find_variant,
    is_archived,
    item_id_of,
    quantity_of,
    sku_index,
    to_price_update,
    to_storefront_product,
    validate_product,
)
from storesync.schemas.worker import (
    CREATE_FAILED,
    FAILED,
    INVALID_RESPONSE,
    SKIPPED,
    SUCCESS,
    UPDATE_FAILED,
    VALIDATION_FAILED,
    ItemOutcome,
)
from storesync.services.ledger import PRODUCT
from storesync.workers.base import SyncWorker


class ProductSyncWorker(SyncWorker):
    worker_type = "ProductSyncWorker"
    kind = PRODUCT

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._storefront_skus: dict[str, dict[str, Any]] | None = None

    def item_id(self, item: dict[str, Any]) -> str:
        return item_id_of(item)

    def mapped_remote_id(self, item: dict[str, Any]) -> str | None:
        product_id = item_id_of(item)
        return self.services.ledger.get_remote_id(PRODUCT, product_id) if product_id else None

    def process_item(self, item: dict[str, Any]) -> ItemOutcome:
        product_id = item_id_of(item)
        if not product_id:
            return ItemOutcome(item_id="", operation="validate", status=FAILED, reason=VALIDATION_FAILED, message="Missing product id")

        detail = self.fetch_detail(item)
        if detail is None:
            return ItemOutcome(
                item_id=product_id,
                operation="fetch",
                status=FAILED,
                reason=INVALID_RESPONSE,
                message="Supplier returned no product details",
            )
        errors = validate_product(detail)
        if errors:
            return ItemOutcome(
                item_id=product_id,
                operation="validate",
                status=FAILED,
                reason=VALIDATION_FAILED,
                message="; ".join(errors),
                details={"errors": errors},
            )

        sku = str(detail["sku"])
        existing_id = self.find_existing(product_id, sku)
        existing = self.services.storefront.get_item(existing_id) if existing_id else None
        if existing_id and existing is None:
            self.logger.warning("Storefront product %s for %s is gone; treating as unmapped", existing_id, product_id)
            existing_id = None

        if is_archived(detail):
            if existing_id is None:
                return ItemOutcome(item_id=product_id, operation="archive", status=SKIPPED, message="Not published")
            return self._guarded(product_id, "archive", UPDATE_FAILED, lambda: self.archive(product_id, existing_id))
        if existing_id is None:
            if quantity_of(detail) == 0:
                # Never publish an unavailable product for the first time.
                return ItemOutcome(item_id=product_id, operation="create", status=SKIPPED, message="Zero inventory")
            return self._guarded(product_id, "create", CREATE_FAILED, lambda: self.create(product_id, sku, detail))
        return self._guarded(
            product_id,
            "update",
            UPDATE_FAILED,
            lambda: self.update(product_id, sku, existing_id, existing, detail),
        )

    def fetch_detail(self, item: dict[str, Any]) -> dict[str, Any] | None:
        product_id = item_id_of(item)
        cached = self.services.cache.get(product_id)
        if cached.hit and isinstance(cached.value, dict):
            return {**item, **cached.value}
        detail = self.services.supplier.get_item_detail(product_id)
        if not detail:
            return None
        self.services.cache.put(product_id, detail)
        return {**item, **detail}

    def find_existing(self, product_id: str, sku: str) -> str | None:
        ledger = self.services.ledger
        remote_id = ledger.get_remote_id(PRODUCT, product_id)
        if remote_id:
            return remote_id
        mapping = ledger.get_by_sku(PRODUCT, sku)
        if mapping is not None:
            return mapping.remote_id
        found = self.storefront_skus().get(sku)
        return str(found["id"]) if found and found.get("id") else None

    def storefront_skus(self) -> dict[str, dict[str, Any]]:
        if self._storefront_skus is None:
            products: list[dict[str, Any]] = []
            token: str | None = None
            try:
                while True:
                    params: dict[str, Any] = {"fields": "id,variants"}
                    if token:
                        params["page_info"] = token
                    page, token = self.services.storefront.list_items(params)
                    products.extend(page)
                    if not token:
                        break
            except StorefrontError as exc:
                self.logger.error("Could not preload storefront SKUs: %s", exc)
            self._storefront_skus = sku_index(products)
            self.logger.info("Worker #%s preloaded %s storefront SKUs", self.worker_id, len(self._storefront_skus))
        return self._storefront_skus

    def create(self, product_id: str, sku: str, detail: dict[str, Any]) -> ItemOutcome:
        storefront = self.services.storefront
        created = storefront.create_item(to_storefront_product(detail, self.services.settings.supplier_vendor))
        if not created.get("id"):
            return ItemOutcome(
                item_id=product_id,
                operation="create",
                status=FAILED,
                reason=CREATE_FAILED,
                message="Storefront returned no product id",
            )
        self.services.ledger.save_mapping(PRODUCT, product_id, created["id"], sku)
        self.set_inventory(created, sku, quantity_of(detail))
        self.logger.debug("Created storefront product %s for %s", created["id"], product_id)
        return ItemOutcome(item_id=product_id, operation="create", status=SUCCESS)

    def update(
        self,
        product_id: str,
        sku: str,
        existing_id: str,
        existing: dict[str, Any],
        detail: dict[str, Any],
    ) -> ItemOutcome:
        self.services.storefront.update_item(existing_id, to_price_update(detail, existing))
        self.services.ledger.save_mapping(PRODUCT, product_id, existing_id, sku)
        self.set_inventory(existing, sku, quantity_of(detail))
        return ItemOutcome(item_id=product_id, operation="update", status=SUCCESS)

    def archive(self, product_id: str, existing_id: str) -> ItemOutcome:
        self.services.storefront.update_item(existing_id, {"status": "archived"})
        return ItemOutcome(item_id=product_id, operation="archive", status=SUCCESS)

    def set_inventory(self, product: dict[str, Any], sku: str, quantity: int) -> None:
        variant = find_variant(product, sku)
        inventory_item_id = variant.get("inventory_item_id") if variant else None
        if not inventory_item_id:
            self.logger.warning("No inventory item for SKU %s; inventory left unchanged", sku)
            return
        self.services.storefront.update_inventory(int(inventory_item_id), quantity)

    def _guarded(self, product_id: str, operation: str, reason: str, action) -> ItemOutcome:
        try:
            return action()
        except StorefrontError as exc:
            if not exc.is_rejection:
                raise
            return ItemOutcome(
                item_id=product_id,
                operation=operation,
                status=FAILED,
                reason=reason,
                message=str(exc),
                details={"status_code": exc.status_code, "body": exc.body},
            )
