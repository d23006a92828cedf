from __future__ import annotations

from typing import Any


ARCHIVED_STATUSES = {"disabled", "archival"}


def item_id_of(item: dict[str, Any]) -> str:
    value = item.get("product_id", item.get("id"))
    return str(value) if value not in (None, "") else ""


def quantity_of(detail: dict[str, Any]) -> int:
    raw = detail.get("qty", detail.get("quantity", 0))
    try:
        return max(0, int(float(raw)))
    except (TypeError, ValueError):
        return 0


def price_of(detail: dict[str, Any]) -> str:
    raw = detail.get("price_tax")
    if raw in (None, ""):
        raw = detail.get("price", 0)
    try:
        return f"{float(raw):.2f}"
    except (TypeError, ValueError):
        return "0.00"


def is_archived(detail: dict[str, Any]) -> bool:
    return str(detail.get("status") or "").strip().lower() in ARCHIVED_STATUSES


def validate_product(detail: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    if not item_id_of(detail):
        errors.append("Missing product id")
    if not str(detail.get("sku") or "").strip():
        errors.append("Missing SKU")
    return errors


def publish_status(detail: dict[str, Any]) -> str:
    if is_archived(detail):
        return "archived"
    # Out of stock stays listed but unpublished.
    return "draft" if quantity_of(detail) == 0 else "active"


def to_storefront_product(detail: dict[str, Any], default_vendor: str) -> dict[str, Any]:
    product: dict[str, Any] = {
        "title": detail.get("name") or "Unknown Product",
        "vendor": detail.get("manufacturer") or default_vendor,
        "product_type": detail.get("category") or "",
        "status": publish_status(detail),
        "tags": "powerbody, import",
        "variants": [
            {
                "sku": detail.get("sku") or "",
                "price": price_of(detail),
                "inventory_management": "shopify",
                "inventory_policy": "deny",
                "requires_shipping": True,
            }
        ],
    }
    if detail.get("weight") not in (None, ""):
        product["variants"][0]["weight"] = detail["weight"]
        product["variants"][0]["weight_unit"] = "kg"
    image = detail.get("image") or detail.get("image_url")
    if image:
        product["images"] = [{"src": image}]
    description = detail.get("description_en") or detail.get("description")
    if description:
        product["body_html"] = description
    return product


def find_variant(product: dict[str, Any], sku: str) -> dict[str, Any] | None:
    variants = product.get("variants") or []
    for variant in variants:
        if variant.get("sku") == sku:
            return variant
    return variants[0] if len(variants) == 1 else None


def to_price_update(detail: dict[str, Any], existing: dict[str, Any]) -> dict[str, Any]:
    """Only the fields the sync owns: price and publish state.

    Title, description, images and tags are edited on the storefront and are
    left alone.
    """
    update: dict[str, Any] = {"status": publish_status(detail)}
    variant = find_variant(existing, str(detail.get("sku") or ""))
    if variant and variant.get("id"):
        update["variants"] = [{"id": variant["id"], "price": price_of(detail)}]
    return update


def sku_index(products: list[dict[str, Any]]) -> dict[str, dict[str, Any]]:
    index: dict[str, dict[str, Any]] = {}
    for product in products:
        for variant in product.get("variants") or []:
            sku = variant.get("sku")
            if sku:
                index[sku] = {"id": product.get("id"), "inventory_item_id": variant.get("inventory_item_id")}
    return index
