from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from storesync.clients.base import ALREADY_EXISTS, FAIL, SUCCESS as SUPPLIER_SUCCESS, SupplierResponse
from storesync.core.errors import StorefrontError, SupplierError
from storesync.mapping.orders import (
    is_cancelled,
    is_fulfilled,
    status_update,
    to_supplier_order,
    validate_supplier_order,
)
from storesync.schemas.worker import (
    CREATE_FAILED,
    FAILED,
    INVALID_RESPONSE,
    SKIPPED,
    SUCCESS,
    UNKNOWN_RESPONSE,
    UPDATE_FAILED,
    VALIDATION_FAILED,
    ItemOutcome,
)
from storesync.services.ledger import ORDER, PRODUCT
from storesync.workers.base import SyncWorker


class OrderSyncWorker(SyncWorker):
    worker_type = "OrderSyncWorker"
    kind = ORDER

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.remote_order_ids: set[str] = set()

    @property
    def prefix(self) -> str:
        return self.services.settings.order_id_prefix

    def mapped_remote_id(self, item: dict[str, Any]) -> str | None:
        order_id = self.item_id(item)
        return self.services.ledger.get_remote_id(ORDER, order_id) if order_id else None

    def prepare(self) -> None:
        today = datetime.now(timezone.utc).date()
        days = self.services.settings.supplier_order_lookback_days
        filters = {"from": (today - timedelta(days=days)).isoformat(), "to": today.isoformat()}
        try:
            orders = self.services.supplier.get_orders(filters)
        except SupplierError as exc:
            self.logger.warning("Could not load recent supplier orders, relying on the ledger only: %s", exc)
            return
        self.remote_order_ids = {str(order.get("id") or order.get("order_id")) for order in orders}
        self.logger.info("Worker #%s knows %s recent supplier orders", self.worker_id, len(self.remote_order_ids))

    def is_supplier_line(self, line: dict[str, Any]) -> bool:
        vendor = str(line.get("vendor") or "").strip().lower()
        if vendor and vendor == self.services.settings.supplier_vendor.lower():
            return True
        sku = line.get("sku")
        return bool(sku) and self.services.ledger.get_by_sku(PRODUCT, sku) is not None

    def process_item(self, item: dict[str, Any]) -> ItemOutcome:
        order_id = self.item_id(item)
        if not order_id:
            return ItemOutcome(item_id="", operation="validate", status=FAILED, reason=VALIDATION_FAILED, message="Missing order id")

        remote_id = self.services.ledger.get_remote_id(ORDER, order_id)
        if remote_id:
            return self.push_state(item, remote_id)

        supplier_order = to_supplier_order(item, self.prefix, self.is_supplier_line)
        if not supplier_order["products"]:
            return ItemOutcome(item_id=order_id, operation="create", status=SKIPPED, message="No supplier products")
        errors = validate_supplier_order(supplier_order)
        if errors:
            self.logger.error("Order %s failed validation: %s", order_id, "; ".join(errors))
            return ItemOutcome(
                item_id=order_id,
                operation="validate",
                status=FAILED,
                reason=VALIDATION_FAILED,
                message="; ".join(errors),
                details={"errors": errors, "supplier_order": supplier_order},
            )

        remote_id = supplier_order["id"]
        if remote_id in self.remote_order_ids:
            # The supplier already has it; the ledger was behind.
            self.services.ledger.save_mapping(ORDER, order_id, remote_id)
            return ItemOutcome(item_id=order_id, operation="adopt", status=SUCCESS, message="Already known to supplier")

        response = self.services.supplier.create_order(supplier_order)
        if response.status == SUPPLIER_SUCCESS:
            self.services.ledger.save_mapping(ORDER, order_id, remote_id)
            self.remote_order_ids.add(remote_id)
            self.mark_sent(order_id)
            return ItemOutcome(item_id=order_id, operation="create", status=SUCCESS)
        if response.status == ALREADY_EXISTS:
            self.services.ledger.save_mapping(ORDER, order_id, remote_id)
            self.remote_order_ids.add(remote_id)
            outcome = self.push_state(item, remote_id)
            if outcome.status == SKIPPED:
                return ItemOutcome(item_id=order_id, operation="adopt", status=SUCCESS, message="Already existed on supplier")
            return outcome
        return self.failure(order_id, "create", CREATE_FAILED, response)

    def push_state(self, order: dict[str, Any], remote_id: str) -> ItemOutcome:
        order_id = self.item_id(order)
        update = None
        if is_fulfilled(order) or is_cancelled(order):
            update = status_update(order, self.prefix, self.supplier_status(remote_id))
        if update is None:
            return ItemOutcome(item_id=order_id, operation="update", status=SKIPPED, message="No state change")
        update["id"] = remote_id
        response = self.services.supplier.update_order(update)
        if response.status == SUPPLIER_SUCCESS:
            self.services.ledger.save_mapping(ORDER, order_id, remote_id)
            return ItemOutcome(item_id=order_id, operation="update", status=SUCCESS, message=f"Pushed {update['status']}")
        return self.failure(order_id, "update", UPDATE_FAILED, response)

    def supplier_status(self, remote_id: str) -> str | None:
        """Current status of the order on the supplier side, None when it cannot be read."""
        try:
            orders = self.services.supplier.get_orders({"order_id": remote_id})
        except SupplierError as exc:
            self.logger.warning("Could not check supplier status of order %s: %s", remote_id, exc)
            return None
        for order in orders:
            if str(order.get("id") or order.get("order_id")) == remote_id:
                return order.get("status")
        return None

    def failure(self, order_id: str, operation: str, rejected_reason: str, response: SupplierResponse) -> ItemOutcome:
        if response.status == FAIL:
            reason = rejected_reason
            message = "; ".join(response.messages) or "Supplier rejected the order"
        elif response.status is None:
            reason = INVALID_RESPONSE
            message = "Supplier response carried no status"
        else:
            reason = UNKNOWN_RESPONSE
            message = f"Unexpected supplier status {response.status}"
        return ItemOutcome(
            item_id=order_id,
            operation=operation,
            status=FAILED,
            reason=reason,
            message=message,
            details={"response": response.raw},
        )

    def mark_sent(self, order_id: str) -> None:
        """Tag the storefront order and open a fulfillment for it.

        Best effort: storefront errors are logged, not raised.
        """
        storefront = self.services.storefront
        tag = self.services.settings.order_tag
        try:
            order = storefront.get_order(order_id)
            if order is None:
                self.logger.warning("Storefront order %s vanished before tagging", order_id)
                return
            tags = [t.strip() for t in str(order.get("tags") or "").split(",") if t.strip()]
            if tag not in tags:
                tags.append(tag)
            note = order.get("note") or ""
            storefront.update_order(
                order_id,
                {
                    "tags": ", ".join(tags),
                    "note": f"{note}\n\nOrder sent to supplier" if note else "Order sent to supplier",
                },
            )
            storefront.create_fulfillment(
                order_id,
                {
                    "status": "open",
                    "notify_customer": False,
                    "tracking_info": {"company": self.services.settings.supplier_vendor, "number": "Awaiting processing"},
                },
            )
        except StorefrontError as exc:
            self.logger.warning("Could not tag storefront order %s: %s", order_id, exc)

