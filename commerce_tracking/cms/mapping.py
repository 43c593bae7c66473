"""
CMS entry mapping

Turns flattened Strapi entries into tracker models. Missing fields get the
same defaults whether the entry came from a webhook or a resync.
"""

from typing import Any, Dict, Optional

from pydantic import ValidationError as PydanticValidationError

from commerce_tracking.errors import ValidationError
from commerce_tracking.tracking.models import Order, ProductInventory

from .client import flatten_entry


def _name(relation: Any, default: str = "") -> str:
    if isinstance(relation, dict):
        return relation.get("name") or default
    if isinstance(relation, str):
        return relation
    return default


def _address(value: Any) -> Optional[Dict[str, Any]]:
    return value if isinstance(value, dict) and value else None


def _order_item(item: Dict[str, Any]) -> Dict[str, Any]:
    product = item.get("product") or {}
    quantity = int(item.get("quantity") or 1)
    price = float(item.get("price") or 0)
    return {
        "product_id": str(product.get("id") or "unknown"),
        "product_name": product.get("name") or "Unknown Product",
        "sku": product.get("sku") or "unknown",
        "quantity": quantity,
        "unit_price": price,
        "total_price": price * quantity,
        "category": _name(product.get("category")),
        "brand": _name(product.get("brand")),
        "variant": item.get("variant") or "",
    }


def map_strapi_order(entry: Dict[str, Any]) -> Order:
    data = flatten_entry(entry)
    if not isinstance(data, dict) or data.get("id") is None:
        raise ValidationError("CMS order entry has no id")

    customer = data.get("customer")
    if not isinstance(customer, dict):
        customer = {}
    customer_name = f"{customer.get('firstName') or ''} {customer.get('lastName') or ''}".strip()

    try:
        items = [_order_item(item) for item in data.get("items") or []]
    except (TypeError, ValueError, AttributeError) as e:
        raise ValidationError(f"Invalid CMS order {data['id']}: bad line item ({e})") from e

    shipping_address = _address(data.get("shippingAddress"))
    payload = {
        "id": str(data["id"]),
        "customer_id": str(customer.get("id") or "unknown"),
        "customer_name": customer_name or "Unknown",
        "customer_email": customer.get("email") or "unknown@example.com",
        "status": data.get("status") or "pending",
        "total_amount": data.get("totalAmount") or 0,
        "currency": data.get("currency") or "USD",
        "payment_method": data.get("paymentMethod") or "unknown",
        "shipping_method": data.get("shippingMethod") or "standard",
        "tracking_number": data.get("trackingNumber") or "",
        "carrier": data.get("carrier") or "",
        "estimated_delivery": data.get("estimatedDelivery"),
        "items": items,
        "shipping_address": shipping_address,
        "billing_address": _address(data.get("billingAddress")) or shipping_address,
        "notes": data.get("notes") or "",
    }
    for field, key in (("created_at", "createdAt"), ("updated_at", "updatedAt")):
        if data.get(key):
            payload[field] = data[key]

    try:
        return Order.model_validate(payload)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid CMS order {data['id']}: {e.error_count()} field errors") from e


def map_strapi_product(entry: Dict[str, Any], default_reorder_quantity: int = 50) -> ProductInventory:
    data = flatten_entry(entry)
    if not isinstance(data, dict) or data.get("id") is None:
        raise ValidationError("CMS product entry has no id")

    payload = {
        "product_id": str(data["id"]),
        "product_name": data.get("name") or "",
        "sku": data.get("sku") or "",
        "category": _name(data.get("category"), "Unknown"),
        "sub_category": _name(data.get("subCategory")),
        "brand": _name(data.get("brand")),
        "current_stock": data.get("inventory") or 0,
        "low_stock_threshold": data.get("lowStockThreshold") or 10,
        "reorder_point": data.get("reorderPoint") or 10,
        "reorder_quantity": data.get("reorderQuantity") or default_reorder_quantity,
        "cost_price": data.get("costPrice") or 0,
        "selling_price": data.get("price") or 0,
        "compare_at_price": data.get("compareAtPrice"),
        "supplier": _name(data.get("supplier")),
        "last_restocked": data.get("lastRestocked") or data.get("updatedAt"),
    }
    try:
        return ProductInventory.model_validate(payload)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid CMS product {data['id']}: {e.error_count()} field errors") from e
