"""Field transforms between local records and WooCommerce resources.

remote_to_local() produces column values for the local tables,
local_snapshot() produces the field view the conflict resolver compares,
and local_to_remote() / inventory_payload() build push payloads.
"""

import json
from typing import Any

from src.db.models import Customer, EntityType, Order, Product

LOCAL_MODELS: dict[EntityType, type[Customer] | type[Product] | type[Order]] = {
    EntityType.customer: Customer,
    EntityType.product: Product,
    EntityType.order: Order,
}

NATURAL_KEY_COLUMNS: dict[EntityType, str] = {
    EntityType.customer: "email",
    EntityType.product: "sku",
    EntityType.order: "order_number",
}

# Snapshot fields stored as JSON text columns
JSON_FIELDS: dict[str, str] = {
    "billing_address": "billing_address_json",
    "shipping_address": "shipping_address_json",
    "items": "items_json",
}

# Cost estimate used when the remote has no sale price
COST_RATIO = 0.7

_IGNORED_COMPARE_COLUMNS = frozenset({"id", "created_at", "updated_at"})


def _to_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _to_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _dump_json(value: Any) -> str | None:
    if not value:
        return None
    return json.dumps(value, sort_keys=True, default=str)


def _load_json(raw: str | None) -> Any:
    if raw is None:
        return None
    return json.loads(raw)


def remote_modified_at(remote: dict[str, Any]) -> str | None:
    """Remote modification time, preferring the GMT variant."""
    return remote.get("date_modified_gmt") or remote.get("date_modified")


def natural_key(entity_type: EntityType | str, remote: dict[str, Any]) -> tuple[str, str | None]:
    """Return (local column, value) identifying the remote record locally.

    Products without a SKU are keyed as WC-{id}; orders without a number
    fall back to their id.
    """
    entity = EntityType(entity_type)
    if entity == EntityType.customer:
        email = remote.get("email")
        return "email", email.strip() if email else None
    if entity == EntityType.product:
        return "sku", remote.get("sku") or f"WC-{remote.get('id')}"
    return "order_number", str(remote.get("number") or remote.get("id"))


def _customer_to_local(remote: dict[str, Any]) -> dict[str, Any]:
    billing = remote.get("billing") or {}
    shipping = remote.get("shipping") or {}
    first = remote.get("first_name") or ""
    last = remote.get("last_name") or ""
    _, email = natural_key(EntityType.customer, remote)
    return {
        "customer_code": f"WC-{remote.get('id')}",
        "email": email,
        "first_name": first or None,
        "last_name": last or None,
        "company_name": billing.get("company") or f"{first} {last}".strip() or email,
        "phone": billing.get("phone") or None,
        "billing_address_json": _dump_json(billing),
        "shipping_address_json": _dump_json(shipping),
        "is_active": True,
        "deleted_from_remote": False,
    }


def _product_to_local(remote: dict[str, Any]) -> dict[str, Any]:
    unit_price = _to_float(remote.get("price")) or _to_float(remote.get("regular_price"))
    cost_price = _to_float(remote.get("sale_price"))
    if cost_price is None and unit_price is not None:
        cost_price = round(unit_price * COST_RATIO, 2)
    _, sku = natural_key(EntityType.product, remote)
    return {
        "sku": sku,
        "name": remote.get("name") or sku,
        "description": remote.get("description") or None,
        "unit_price": unit_price,
        "cost_price": cost_price,
        "stock_quantity": _to_int(remote.get("stock_quantity")),
        "is_active": remote.get("status", "publish") == "publish",
        "deleted_from_remote": False,
    }


def _order_to_local(remote: dict[str, Any]) -> dict[str, Any]:
    line_items = remote.get("line_items") or []
    subtotal = _to_float(remote.get("subtotal"))
    if subtotal is None and line_items:
        subtotal = round(sum(_to_float(i.get("subtotal")) or 0.0 for i in line_items), 2)
    _, number = natural_key(EntityType.order, remote)
    return {
        "order_number": number,
        "status": remote.get("status"),
        "currency": remote.get("currency"),
        "total_amount": _to_float(remote.get("total")),
        "subtotal": subtotal,
        "tax_amount": _to_float(remote.get("total_tax")),
        "shipping_cost": _to_float(remote.get("shipping_total")),
        "items_json": _dump_json(line_items),
        "shipping_address_json": _dump_json(remote.get("shipping")),
        "order_date": remote.get("date_created_gmt") or remote.get("date_created"),
        "is_active": True,
        "deleted_from_remote": False,
    }


def remote_to_local(entity_type: EntityType | str, remote: dict[str, Any]) -> dict[str, Any]:
    """Map a remote resource to local column values.

    Args:
        entity_type: Entity type of the resource.
        remote: Raw WooCommerce resource.

    Returns:
        Column -> value dict without id or timestamps.

    Raises:
        ValueError: If the natural key is missing.
    """
    entity = EntityType(entity_type)
    if entity == EntityType.customer:
        values = _customer_to_local(remote)
    elif entity == EntityType.product:
        values = _product_to_local(remote)
    else:
        values = _order_to_local(remote)
    key_column = NATURAL_KEY_COLUMNS[entity]
    if not values.get(key_column):
        raise ValueError(f"Remote {entity.value} {remote.get('id')} has no {key_column}")
    return values


def local_snapshot(entity_type: EntityType | str, record: Any) -> dict[str, Any]:
    """Field view of a local record keyed like the conflict field maps."""
    entity = EntityType(entity_type)
    snapshot: dict[str, Any] = {"id": record.id, "updated_at": record.updated_at}
    if entity == EntityType.customer:
        snapshot.update({
            "company_name": record.company_name,
            "email": record.email,
            "phone": record.phone,
            "billing_address": _load_json(record.billing_address_json),
            "shipping_address": _load_json(record.shipping_address_json),
        })
    elif entity == EntityType.product:
        snapshot.update({
            "name": record.name,
            "unit_price": record.unit_price,
            "cost_price": record.cost_price,
            "description": record.description,
            "sku": record.sku,
            "stock_quantity": record.stock_quantity,
        })
    else:
        snapshot.update({
            "status": record.status,
            "total_amount": record.total_amount,
            "subtotal": record.subtotal,
            "tax_amount": record.tax_amount,
            "shipping_cost": record.shipping_cost,
            "shipping_address": _load_json(record.shipping_address_json),
        })
    return snapshot


def column_value(field_name: str, value: Any) -> tuple[str, Any]:
    """Translate a snapshot field and value to its column form."""
    column = JSON_FIELDS.get(field_name)
    if column is not None:
        return column, _dump_json(value)
    return field_name, value


def apply_resolved_values(values: dict[str, Any], resolved: dict[str, Any]) -> dict[str, Any]:
    """Overlay resolved snapshot fields onto mapped column values."""
    for field_name, value in resolved.items():
        column, column_val = column_value(field_name, value)
        values[column] = column_val
    return values


def has_changes(record: Any, values: dict[str, Any]) -> bool:
    """True if writing values would modify the local record."""
    for column, value in values.items():
        if column in _IGNORED_COMPARE_COLUMNS:
            continue
        if getattr(record, column, None) != value:
            return True
    return False


def local_to_remote(entity_type: EntityType | str, record: Any) -> dict[str, Any]:
    """Build the update payload for a local record."""
    entity = EntityType(entity_type)
    if entity == EntityType.customer:
        billing = _load_json(record.billing_address_json) or {}
        billing.update({
            "company": record.company_name or "",
            "phone": record.phone or "",
            "email": record.email,
        })
        payload: dict[str, Any] = {
            "email": record.email,
            "first_name": record.first_name or "",
            "last_name": record.last_name or "",
            "billing": billing,
        }
        shipping = _load_json(record.shipping_address_json)
        if shipping:
            payload["shipping"] = shipping
        return payload
    if entity == EntityType.product:
        payload = {
            "name": record.name,
            "description": record.description or "",
        }
        if record.unit_price is not None:
            payload["regular_price"] = f"{record.unit_price:.2f}"
        return payload
    return {"status": record.status}


def inventory_payload(record: Product) -> dict[str, Any]:
    """Stock-only payload; local inventory is authoritative."""
    quantity = record.stock_quantity or 0
    return {
        "manage_stock": True,
        "stock_quantity": quantity,
        "stock_status": "instock" if quantity > 0 else "outofstock",
    }
