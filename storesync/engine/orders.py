from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from storesync.core.errors import StorefrontError, SupplierError
from storesync.engine.base import ReconciliationEngine
from storesync.mapping.orders import order_number_from_remote_id
from storesync.schemas.worker import ItemOutcome
from storesync.services.ledger import ORDER
from storesync.workers.orders import OrderSyncWorker


TRACKING_URL = "https://track-trace.com/{number}"

logger = logging.getLogger(__name__)


class OrderReconciler(ReconciliationEngine):
    kind = ORDER
    worker_class = OrderSyncWorker

    def __init__(self, *args: Any, propagate_updates: bool = True, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.propagate_updates = propagate_updates

    def fetch_items(self) -> list[dict[str, Any]]:
        since = self.services.ledger.get_last_sync_time(ORDER)
        params: dict[str, Any] = {
            "status": "any",
            "fulfillment_status": "unfulfilled",
            "created_at_min": since.isoformat(),
        }
        orders: list[dict[str, Any]] = []
        while True:
            page, token = self.services.storefront.list_orders(params)
            orders.extend(page)
            if not token:
                break
            params = {"page_info": token}

        checker = self.make_worker()
        relevant = [order for order in orders if any(checker.is_supplier_line(line) for line in order.get("line_items") or [])]
        logger.info("Storefront has %s orders since %s, %s with supplier products", len(orders), since.isoformat(), len(relevant))
        return relevant

    def after_sync(self, items: list[dict[str, Any]], outcomes: list[ItemOutcome]) -> None:
        if not self.propagate_updates:
            return
        try:
            updated = self.propagate_supplier_updates()
        except (SupplierError, StorefrontError) as exc:
            logger.error("Failed to propagate supplier order updates: %s", exc)
            return
        logger.info("Propagated supplier updates to %s storefront orders", updated)

    def propagate_supplier_updates(self, days: int | None = None) -> int:
        """Copy supplier tracking numbers and status changes back onto storefront orders."""
        settings = self.services.settings
        today = datetime.now(timezone.utc).date()
        lookback = settings.supplier_order_lookback_days if days is None else days
        remote_orders = self.services.supplier.get_orders(
            {"from": (today - timedelta(days=lookback)).isoformat(), "to": today.isoformat()}
        )
        updated = 0
        for remote in remote_orders:
            remote_id = str(remote.get("order_id") or remote.get("id") or "")
            if not remote_id or not remote.get("status"):
                continue
            order_id = self.storefront_order_id(remote_id)
            if order_id is None:
                continue
            try:
                if self.apply_remote_state(order_id, remote):
                    updated += 1
            except StorefrontError as exc:
                logger.error("Could not update storefront order %s from %s: %s", order_id, remote_id, exc)
        return updated

    def storefront_order_id(self, remote_id: str) -> str | None:
        ledger = self.services.ledger
        order_id = ledger.get_local_id(ORDER, remote_id)
        if order_id:
            return order_id
        number = order_number_from_remote_id(remote_id, self.services.settings.order_id_prefix)
        if number is None:
            return None
        matches, _ = self.services.storefront.list_orders({"name": f"#{number}", "status": "any"})
        if not matches:
            return None
        order_id = str(matches[0]["id"])
        ledger.save_mapping(ORDER, order_id, remote_id)
        logger.info("Recovered mapping for supplier order %s -> storefront order %s", remote_id, order_id)
        return order_id

    def apply_remote_state(self, order_id: str, remote: dict[str, Any]) -> bool:
        storefront = self.services.storefront
        order = storefront.get_order(order_id)
        if order is None:
            logger.warning("Storefront order %s not found for supplier update", order_id)
            return False

        changed = False
        notes: list[str] = []
        tracking = str(remote.get("tracking_number") or "").strip()
        known = {str(f.get("tracking_number") or "") for f in order.get("fulfillments") or []}
        if tracking and tracking not in known:
            storefront.create_fulfillment(
                order_id,
                {
                    "status": "success",
                    "notify_customer": True,
                    "tracking_info": {
                        "number": tracking,
                        "url": TRACKING_URL.format(number=tracking),
                        "company": f"{self.services.settings.supplier_vendor} Shipping",
                    },
                },
            )
            notes.append(f"Tracking number updated: {tracking}")

        status_line = f"Supplier order status updated to: {remote['status']}"
        note = order.get("note") or ""
        if status_line not in note:
            notes.append(status_line)
        if notes:
            combined = "\n\n".join([note, *notes]) if note else "\n\n".join(notes)
            storefront.update_order(order_id, {"note": combined})
            changed = True
        return changed
