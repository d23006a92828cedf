from __future__ import annotations

import hashlib
import json
from typing import Any, Callable


REQUIRED_ADDRESS_FIELDS = {
    "name": "First name",
    "surname": "Last name",
    "address1": "Address",
    "postcode": "Postal code",
    "city": "City",
    "country_name": "Country",
    "country_code": "Country code",
    "phone": "Phone",
    "email": "Email",
}
REQUIRED_PRODUCT_FIELDS = {
    "sku": "SKU",
    "name": "Product name",
    "qty": "Quantity",
    "price": "Price",
    "currency": "Currency",
}
REQUIRED_ORDER_FIELDS = {
    "id": "Order ID",
    "date_add": "Order date",
}
PLACEHOLDER_EMAIL_DOMAIN = "noemail.local"

# Supplier order statuses.
FULFILLED = "fulfilled"
CANCELLED = "cancelled"
SUPPLIER_FULFILLED_STATUSES = (FULFILLED, "completed")


def _blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict)):
        return not value
    return False


def _quantity(value: Any) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0


def supplier_order_id(order: dict[str, Any], prefix: str) -> str:
    return f"{prefix}{order.get('order_number') or order.get('id')}"


def idempotency_key(order: dict[str, Any]) -> str:
    """Stable digest of the order id and its line items.

    Replaying the same storefront order always produces the same key, so the
    supplier can recognise a duplicate even when the local ledger is stale.
    """
    lines = sorted(
        (str(item.get("sku") or item.get("variant_id") or ""), _quantity(item.get("quantity")))
        for item in order.get("line_items") or []
    )
    material = json.dumps({"order": str(order.get("id")), "lines": lines}, sort_keys=True)
    return hashlib.sha256(material.encode("utf-8")).hexdigest()[:32]


def _shipping_address(order: dict[str, Any]) -> dict[str, Any]:
    customer = order.get("customer") or {}
    shipping = dict(order.get("shipping_address") or {})
    for field in ("first_name", "last_name", "phone"):
        if _blank(shipping.get(field)) and not _blank(customer.get(field)):
            shipping[field] = customer[field]
    return shipping


def to_supplier_order(
    order: dict[str, Any],
    prefix: str,
    is_supplier_line: Callable[[dict[str, Any]], bool],
) -> dict[str, Any]:
    shipping = _shipping_address(order)
    customer = order.get("customer") or {}
    email = order.get("contact_email") or order.get("email") or customer.get("email") or shipping.get("email")
    currency = order.get("currency")

    products = []
    weight = 0.0
    for item in order.get("line_items") or []:
        if not is_supplier_line(item):
            continue
        tax_lines = item.get("tax_lines") or []
        products.append(
            {
                "product_id": item.get("product_id"),
                "sku": item.get("sku"),
                "name": item.get("name") or item.get("title"),
                "qty": item.get("quantity"),
                "price": item.get("price"),
                "currency": currency,
                "tax": float(tax_lines[0].get("rate") or 0) * 100 if tax_lines else 0,
            }
        )
        if item.get("grams"):
            weight += float(item["grams"]) * _quantity(item.get("quantity")) / 1000

    shipping_price = sum(float(line.get("price") or 0) for line in order.get("shipping_lines") or [])
    number = order.get("order_number") or order.get("id")
    return {
        "id": supplier_order_id(order, prefix),
        "status": "pending",
        "currency_rate": 1,
        "transport_code": "standard",
        "weight": round(weight, 3),
        "date_add": order.get("created_at"),
        "comment": f"Order from storefront #{number}",
        "shipping_price": shipping_price,
        "idempotency_key": idempotency_key(order),
        "address": {
            "name": shipping.get("first_name"),
            "surname": shipping.get("last_name"),
            "address1": shipping.get("address1"),
            "address2": shipping.get("address2") or "",
            "address3": "",
            "postcode": shipping.get("zip"),
            "city": shipping.get("city"),
            "county": shipping.get("province") or "",
            "country_name": shipping.get("country"),
            "country_code": shipping.get("country_code"),
            "phone": shipping.get("phone"),
            "email": email,
        },
        "products": products,
    }


def validate_supplier_order(order: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    address = order.get("address") or {}
    for field, label in REQUIRED_ADDRESS_FIELDS.items():
        if _blank(address.get(field)):
            errors.append(f"Missing required address field: {label}")

    products = order.get("products") or []
    if not products:
        errors.append("No products in order")
    for index, product in enumerate(products):
        for field, label in REQUIRED_PRODUCT_FIELDS.items():
            value = product.get(field)
            if _blank(value) or (field == "qty" and _quantity(value) <= 0):
                errors.append(f"Missing required product field: {label} in product #{index}")

    for field, label in REQUIRED_ORDER_FIELDS.items():
        if _blank(order.get(field)):
            errors.append(f"Missing required order field: {label}")
    return errors


def is_fulfilled(order: dict[str, Any]) -> bool:
    if order.get("fulfillment_status") == "fulfilled":
        return True
    return any(f.get("status") == "success" for f in order.get("fulfillments") or [])


def is_cancelled(order: dict[str, Any]) -> bool:
    return bool(order.get("cancelled_at"))


def status_update(order: dict[str, Any], prefix: str, supplier_status: str | None = None) -> dict[str, Any] | None:
    """Supplier update payload for a storefront order whose state moved on, else None.

    ``supplier_status`` is the order's current status on the supplier side; a
    state the supplier already holds is not pushed again.
    """
    if is_fulfilled(order) and supplier_status not in SUPPLIER_FULFILLED_STATUSES:
        status = FULFILLED
    elif is_cancelled(order) and supplier_status != CANCELLED:
        status = CANCELLED
    else:
        return None
    update: dict[str, Any] = {"id": supplier_order_id(order, prefix), "status": status}
    if status == CANCELLED and order.get("cancel_reason"):
        update["comment"] = f"Cancelled on storefront: {order['cancel_reason']}"
    return update


def repair_customer_email(order: dict[str, Any]) -> tuple[dict[str, Any], list[str]]:
    """Backfill the customer email a supplier order needs.

    Uses the shipping then billing address email, otherwise generates a
    placeholder from the customer name and order number, then copies the result
    onto both addresses. Returns the repaired copy and the list of fixes applied.
    """
    repaired = json.loads(json.dumps(order, default=str))
    fixes: list[str] = []
    customer = repaired.setdefault("customer", {}) or {}
    repaired["customer"] = customer
    shipping = repaired.get("shipping_address") or {}
    billing = repaired.get("billing_address") or {}

    if _blank(customer.get("email")):
        if not _blank(shipping.get("email")):
            customer["email"] = shipping["email"]
            fixes.append("Used shipping address email for customer")
        elif not _blank(billing.get("email")):
            customer["email"] = billing["email"]
            fixes.append("Used billing address email for customer")
        else:
            first = customer.get("first_name") or "customer"
            last = customer.get("last_name") or ""
            number = repaired.get("order_number") or repaired.get("id") or "unknown"
            customer["email"] = f"{first}.{last}+order{number}@{PLACEHOLDER_EMAIL_DOMAIN}".lower().replace(" ", "")
            fixes.append(f"Generated placeholder email: {customer['email']}")

    for key, label in (("shipping_address", "shipping"), ("billing_address", "billing")):
        address = repaired.get(key)
        if address is None:
            address = {}
            repaired[key] = address
        if _blank(address.get("email")):
            address["email"] = customer["email"]
            fixes.append(f"Added customer email to {label} address")
    if _blank(repaired.get("email")):
        repaired["email"] = customer["email"]
    return repaired, fixes


def order_number_from_remote_id(remote_id: str, prefix: str) -> str | None:
    if remote_id.startswith(prefix):
        return remote_id[len(prefix):] or None
    return None
