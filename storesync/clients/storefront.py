from __future__ import annotations

import logging
import time
from typing import Any
from urllib.parse import parse_qs, urlparse

import httpx

from storesync.clients.base import StorefrontClient
from storesync.core.config import Settings
from storesync.core.errors import RETRYABLE_HTTP_STATUSES, StorefrontError


PAGE_LIMIT = 250

logger = logging.getLogger(__name__)


def retry_after_seconds(response: httpx.Response) -> float:
    value = response.headers.get("Retry-After", "")
    try:
        return float(value)
    except ValueError:
        return 0.0


def next_page_token(response: httpx.Response) -> str | None:
    link = response.links.get("next")
    if not link or not link.get("url"):
        return None
    values = parse_qs(urlparse(link["url"]).query).get("page_info")
    return values[0] if values else None


class RestStorefrontClient(StorefrontClient):
    def __init__(
        self,
        shop: str,
        token: str,
        api_version: str = "2024-01",
        location_id: int | None = None,
        timeout_seconds: float = 30.0,
        max_retries: int = 3,
        retry_backoff_seconds: float = 1.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = f"https://{shop}/admin/api/{api_version}/"
        self.max_retries = max_retries
        self.retry_backoff_seconds = retry_backoff_seconds
        self._location_id = location_id
        self.client = httpx.Client(
            base_url=self.base_url,
            timeout=timeout_seconds,
            transport=transport,
            headers={
                "X-Shopify-Access-Token": token,
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> RestStorefrontClient:
        return cls(
            shop=settings.storefront_shop,
            token=settings.storefront_token,
            api_version=settings.storefront_api_version,
            location_id=settings.storefront_location_id,
            timeout_seconds=settings.storefront_timeout_seconds,
            max_retries=settings.storefront_max_retries,
            retry_backoff_seconds=settings.storefront_retry_backoff_seconds,
        )

    def list_items(self, params: dict[str, Any] | None = None) -> tuple[list[dict[str, Any]], str | None]:
        response = self._request("GET", "products.json", params=self._page_params(params))
        return response.json().get("products", []), next_page_token(response)

    def get_item(self, item_id: str | int) -> dict[str, Any] | None:
        return self._get_one(f"products/{item_id}.json", "product")

    def create_item(self, item: dict[str, Any]) -> dict[str, Any]:
        response = self._request("POST", "products.json", json={"product": item})
        return response.json().get("product") or {}

    def update_item(self, item_id: str | int, item: dict[str, Any]) -> dict[str, Any]:
        response = self._request("PUT", f"products/{item_id}.json", json={"product": {**item, "id": item_id}})
        return response.json().get("product") or {}

    def update_inventory(self, inventory_item_id: int, quantity: int) -> dict[str, Any]:
        payload = {
            "location_id": self.get_location_id(),
            "inventory_item_id": inventory_item_id,
            "available": int(quantity),
        }
        response = self._request("POST", "inventory_levels/set.json", json=payload)
        return response.json().get("inventory_level") or {}

    def get_location_id(self) -> int:
        if self._location_id is None:
            response = self._request("GET", "locations.json")
            locations = response.json().get("locations", [])
            active = [loc for loc in locations if loc.get("active", True)]
            if not active:
                raise StorefrontError("Storefront has no active location for inventory updates")
            self._location_id = int(active[0]["id"])
            logger.info("Using storefront location %s", self._location_id)
        return self._location_id

    def list_orders(self, params: dict[str, Any] | None = None) -> tuple[list[dict[str, Any]], str | None]:
        response = self._request("GET", "orders.json", params=self._page_params(params))
        return response.json().get("orders", []), next_page_token(response)

    def get_order(self, order_id: str | int) -> dict[str, Any] | None:
        return self._get_one(f"orders/{order_id}.json", "order")

    def update_order(self, order_id: str | int, data: dict[str, Any]) -> dict[str, Any]:
        response = self._request("PUT", f"orders/{order_id}.json", json={"order": {**data, "id": order_id}})
        return response.json().get("order") or {}

    def create_fulfillment(self, order_id: str | int, data: dict[str, Any]) -> dict[str, Any]:
        response = self._request("POST", f"orders/{order_id}/fulfillments.json", json={"fulfillment": data})
        return response.json().get("fulfillment") or {}

    def close(self) -> None:
        self.client.close()

    def _page_params(self, params: dict[str, Any] | None) -> dict[str, Any]:
        merged = {"limit": PAGE_LIMIT}
        merged.update(params or {})
        if merged.get("page_info"):
            # Cursor pages reject every filter except limit and fields.
            merged = {key: value for key, value in merged.items() if key in {"limit", "fields", "page_info"}}
        return merged

    def _get_one(self, path: str, key: str) -> dict[str, Any] | None:
        try:
            response = self._request("GET", path)
        except StorefrontError as exc:
            if exc.status_code == 404:
                return None
            raise
        return response.json().get(key)

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        attempts = self.max_retries + 1
        for attempt in range(attempts):
            try:
                response = self.client.request(method, path, **kwargs)
                if response.status_code in RETRYABLE_HTTP_STATUSES:
                    raise httpx.HTTPStatusError(
                        f"Retryable status {response.status_code} for {method} {path}",
                        request=response.request,
                        response=response,
                    )
                response.raise_for_status()
                return response
            except (httpx.TimeoutException, httpx.NetworkError, httpx.HTTPStatusError) as exc:
                status = exc.response.status_code if isinstance(exc, httpx.HTTPStatusError) else None
                if status is not None and status not in RETRYABLE_HTTP_STATUSES:
                    raise StorefrontError(
                        f"{method} {path} failed with HTTP {status}",
                        status_code=status,
                        body=exc.response.text,
                    ) from exc
                if attempt >= attempts - 1:
                    raise StorefrontError(f"{method} {path} failed: {exc}", status_code=status) from exc

                backoff = self.retry_backoff_seconds * (2**attempt)
                if status == 429:
                    backoff = max(backoff, retry_after_seconds(exc.response))
                if backoff > 0:
                    time.sleep(backoff)
                logger.debug("Retrying %s %s after error (%s), attempt %s/%s", method, path, exc, attempt + 1, attempts)
        raise StorefrontError(f"Unreachable retry state for {method} {path}")
