from __future__ import annotations

import logging
from typing import Any

from storesync.engine.base import ReconciliationEngine
from storesync.services.ledger import PRODUCT
from storesync.workers.products import ProductSyncWorker


logger = logging.getLogger(__name__)


class ProductReconciler(ReconciliationEngine):
    kind = PRODUCT
    worker_class = ProductSyncWorker

    def fetch_items(self) -> list[dict[str, Any]]:
        items = self.services.supplier.list_items()
        logger.info("Supplier lists %s products", len(items))
        return items
