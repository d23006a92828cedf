from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any


SUCCESS = "SUCCESS"
ALREADY_EXISTS = "ALREADY_EXISTS"
FAIL = "FAIL"

STATUS_ALIASES = {
    "UPDATE_SUCCESS": SUCCESS,
    "UPDATE_FAIL": FAIL,
}


@dataclass
class SupplierResponse:
    """Normalized answer to an order write.

    ``status`` is ``None`` when the supplier returned nothing usable; any other
    value outside SUCCESS/ALREADY_EXISTS/FAIL is passed through untouched.
    """

    status: str | None
    raw: Any = None
    messages: list[str] = field(default_factory=list)

    @classmethod
    def from_raw(cls, raw: Any) -> SupplierResponse:
        if not isinstance(raw, dict) or raw.get("api_response") in (None, ""):
            return cls(status=None, raw=raw)
        status = str(raw["api_response"]).strip().upper()
        messages = raw.get("messages") or raw.get("errors") or []
        if isinstance(messages, str):
            messages = [messages]
        return cls(status=STATUS_ALIASES.get(status, status), raw=raw, messages=[str(m) for m in messages])


class SupplierClient(ABC):
    @abstractmethod
    def list_items(self) -> list[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def get_item_detail(self, item_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def create_order(self, order: dict[str, Any]) -> SupplierResponse:
        raise NotImplementedError

    @abstractmethod
    def update_order(self, order: dict[str, Any]) -> SupplierResponse:
        raise NotImplementedError

    @abstractmethod
    def get_orders(self, filters: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        raise NotImplementedError

    def close(self) -> None:
        return None


class StorefrontClient(ABC):
    @abstractmethod
    def list_items(self, params: dict[str, Any] | None = None) -> tuple[list[dict[str, Any]], str | None]:
        raise NotImplementedError

    @abstractmethod
    def get_item(self, item_id: str | int) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def create_item(self, item: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def update_item(self, item_id: str | int, item: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def update_inventory(self, inventory_item_id: int, quantity: int) -> dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def list_orders(self, params: dict[str, Any] | None = None) -> tuple[list[dict[str, Any]], str | None]:
        raise NotImplementedError

    @abstractmethod
    def get_order(self, order_id: str | int) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def update_order(self, order_id: str | int, data: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def create_fulfillment(self, order_id: str | int, data: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def close(self) -> None:
        return None
