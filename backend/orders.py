import math
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from bson import ObjectId
from bson.errors import InvalidId

ORDER_STATUSES = ("created", "paid", "shipped", "completed", "cancelled")
TERMINAL_STATUSES = frozenset({"completed", "cancelled"})

FULFILLMENT_PENDING = "pending"
FULFILLMENT_REVIEWED = "reviewed"

AVAILABILITY_AVAILABLE = "available"
AVAILABILITY_MISSING = "missing"
ITEM_AVAILABILITY_VALUES = (AVAILABILITY_AVAILABLE, AVAILABILITY_MISSING)

ADJUSTMENT_ADD_ITEM = "add_item"
ADJUSTMENT_REMOVE_ITEM = "remove_item"
ADJUSTMENT_MANUAL = "manual"

# Which target statuses each actor relation may request through the
# generic status update. Relations are resolved by resolve_actor_relation.
STATUS_PERMISSIONS = {
    "admin": frozenset(ORDER_STATUSES),
    "rider": frozenset({"shipped", "completed", "paid"}),
    "customer": frozenset({"cancelled"}),
}

PAYMENT_STATUS_MAP = {"PAID": "paid", "FAILED": "cancelled"}


class OrderError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class OrderValidationError(OrderError):
    status_code = 400


class OrderAuthenticationError(OrderError):
    status_code = 401


class OrderForbiddenError(OrderError):
    status_code = 403


class OrderNotFoundError(OrderError):
    status_code = 404


class OrderLockedError(OrderError):
    status_code = 409

    def __init__(self, message: str = "Order is locked and can no longer be changed."):
        super().__init__(message)


class OrderConflictError(OrderError):
    status_code = 409

    def __init__(
        self, message: str = "Order was modified concurrently. Reload it and retry."
    ):
        super().__init__(message)


def round_money(value) -> float:
    return round(float(value or 0), 2)


def normalize_object_id(value) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    if value is None:
        return None
    try:
        return ObjectId(str(value).strip())
    except (InvalidId, TypeError):
        return None


def parse_quantity(value, default: Optional[int] = None) -> int:
    if value is None or value == "":
        if default is None:
            raise OrderValidationError("Quantity is required.")
        return default
    if isinstance(value, bool):
        raise OrderValidationError("Quantity must be a whole number.")
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        raise OrderValidationError("Quantity must be a whole number.")
    if not math.isfinite(numeric) or numeric != int(numeric):
        raise OrderValidationError("Quantity must be a whole number.")
    quantity = int(numeric)
    if quantity < 1:
        raise OrderValidationError("Quantity must be at least 1.")
    return quantity


def effective_quantity(item: Dict) -> int:
    fulfilled = item.get("fulfilled_quantity")
    if isinstance(fulfilled, (int, float)) and not isinstance(fulfilled, bool):
        return int(fulfilled)
    return int(item.get("quantity") or 0)


def recalculate_order_total(order: Dict) -> float:
    total = 0.0
    for item in order.get("items") or []:
        if item.get("availability") == AVAILABILITY_MISSING:
            continue
        total += effective_quantity(item) * float(item.get("price_at_purchase") or 0)

    total = round_money(total)
    order["final_total"] = total
    order["total"] = total

    ledger_sum = sum(float(entry.get("amount") or 0) for entry in order.get("adjustments") or [])
    order["review_delta"] = round_money(
        total - float(order.get("original_total") or 0) - ledger_sum
    )
    return total


def build_order_item(product: Dict, quantity: int) -> Dict:
    return {
        "_id": ObjectId(),
        "product": product["_id"],
        "quantity": quantity,
        "price_at_purchase": round_money(product.get("price")),
        "fulfilled_quantity": None,
        "availability": AVAILABILITY_AVAILABLE,
        "admin_note": None,
    }


def normalize_requested_items(raw_items) -> List[Dict]:
    if not isinstance(raw_items, list) or not raw_items:
        raise OrderValidationError("No items")

    requested: List[Dict] = []
    for entry in raw_items:
        if not isinstance(entry, dict):
            raise OrderValidationError("Each item must be an object.")
        product_id = normalize_object_id(
            entry.get("product") or entry.get("productId") or entry.get("product_id")
        )
        if not product_id:
            raise OrderValidationError("Invalid product identifier.")
        requested.append(
            {"product": product_id, "quantity": parse_quantity(entry.get("quantity"), 1)}
        )
    return requested


def build_order_document(
    user_id: ObjectId,
    requested_items: List[Dict],
    products: Dict[ObjectId, Dict],
    shipping_address: Optional[Dict] = None,
) -> Dict:
    items = []
    for entry in requested_items:
        product = products.get(entry["product"])
        if not product:
            raise OrderNotFoundError("Product not found.")
        items.append(build_order_item(product, entry["quantity"]))

    timestamp = datetime.utcnow()
    order = {
        "user": user_id,
        "items": items,
        "status": "created",
        "fulfillment_status": FULFILLMENT_PENDING,
        "adjustments": [],
        "rider": None,
        "shipping_address": shipping_address if isinstance(shipping_address, dict) else {},
        "payment_info": None,
        "version": 0,
        "created_at": timestamp,
        "updated_at": timestamp,
    }
    order["original_total"] = round_money(
        sum(item["quantity"] * item["price_at_purchase"] for item in items)
    )
    recalculate_order_total(order)
    return order


# --- State machine ---


def is_locked(order: Dict) -> bool:
    return order.get("status") in TERMINAL_STATUSES


def ensure_unlocked(order: Dict) -> None:
    if is_locked(order):
        raise OrderLockedError()


def validate_status(value) -> Optional[str]:
    if value is None or value == "":
        return None
    status = str(value).strip().lower()
    if status not in ORDER_STATUSES:
        raise OrderValidationError("Invalid status")
    return status


def user_role(user: Optional[Dict]) -> str:
    if not user:
        return "customer"
    if user.get("is_admin"):
        return "admin"
    role = str(user.get("role") or "").strip().lower()
    return role if role in ("admin", "rider", "customer") else "customer"


def is_owner(user: Optional[Dict], order: Dict) -> bool:
    return bool(user) and str(order.get("user")) == str(user.get("_id"))


def is_assigned_rider(user: Optional[Dict], order: Dict) -> bool:
    rider_id = order.get("rider")
    return bool(user) and rider_id is not None and str(rider_id) == str(user.get("_id"))


def resolve_actor_relation(user: Optional[Dict], order: Dict) -> Optional[str]:
    role = user_role(user)
    if role == "admin":
        return "admin"
    if role == "rider":
        if not is_assigned_rider(user, order):
            raise OrderForbiddenError("Not your assigned order")
        return "rider"
    if is_owner(user, order):
        return "customer"
    return None


def can_view_order(user: Optional[Dict], order: Dict) -> bool:
    return (
        user_role(user) == "admin"
        or is_owner(user, order)
        or is_assigned_rider(user, order)
    )


def authorize_status_change(relation: Optional[str], target: Optional[str]) -> None:
    if relation is None:
        raise OrderForbiddenError("Forbidden")
    if target is None:
        if relation == "admin":
            return
        if relation == "rider":
            raise OrderValidationError("Status is required for rider update")
        raise OrderForbiddenError("Customers can only cancel their orders")
    if target not in STATUS_PERMISSIONS[relation]:
        if relation == "rider":
            raise OrderForbiddenError("Riders cannot change to this status")
        raise OrderForbiddenError("Customers can only cancel their orders")


def change_status(order: Dict, target: str) -> bool:
    current = order.get("status")
    if target == current:
        return False
    if current in TERMINAL_STATUSES:
        raise OrderLockedError(f"Order is already {current}.")
    order["status"] = target
    return True


def assign_rider(order: Dict, rider: Optional[Dict], force_shipped: bool = False) -> None:
    if not rider or user_role(rider) != "rider":
        raise OrderValidationError("Invalid rider")
    ensure_unlocked(order)
    order["rider"] = rider["_id"]
    if force_shipped:
        change_status(order, "shipped")


# --- Fulfillment adjustments ---


def find_item(order: Dict, item_id) -> Dict:
    target = normalize_object_id(item_id)
    if target:
        for item in order.get("items") or []:
            if item.get("_id") == target:
                return item
    raise OrderNotFoundError("Item not found in this order.")


def append_adjustment(
    order: Dict, adjustment_type: str, amount: float, note: str, admin_id
) -> Dict:
    entry = {
        "type": adjustment_type,
        "amount": round_money(amount),
        "note": note,
        "created_at": datetime.utcnow(),
        "admin": admin_id,
    }
    order.setdefault("adjustments", []).append(entry)
    return entry


def _mark_edited(order: Dict) -> None:
    order["fulfillment_status"] = FULFILLMENT_PENDING
    recalculate_order_total(order)


def add_item(order: Dict, product: Dict, quantity: int, admin_id=None) -> Dict:
    ensure_unlocked(order)
    product_name = product.get("title") or product.get("name") or "item"

    existing = next(
        (item for item in order.get("items") or [] if item.get("product") == product["_id"]),
        None,
    )
    if existing:
        existing["quantity"] = int(existing["quantity"]) + quantity
        price = float(existing.get("price_at_purchase") or 0)
        item = existing
    else:
        item = build_order_item(product, quantity)
        order.setdefault("items", []).append(item)
        price = item["price_at_purchase"]

    append_adjustment(
        order,
        ADJUSTMENT_ADD_ITEM,
        price * quantity,
        f"Added {quantity} x {product_name}",
        admin_id,
    )
    _mark_edited(order)
    return item


def update_item_quantity(order: Dict, item_id, quantity: int, admin_id=None) -> Dict:
    ensure_unlocked(order)
    item = find_item(order, item_id)
    previous = int(item["quantity"])
    price = float(item.get("price_at_purchase") or 0)

    item["quantity"] = quantity
    fulfilled = item.get("fulfilled_quantity")
    if fulfilled is not None:
        item["fulfilled_quantity"] = min(int(fulfilled), quantity)
    append_adjustment(
        order,
        ADJUSTMENT_MANUAL,
        (quantity - previous) * price,
        f"Quantity changed from {previous} to {quantity}",
        admin_id,
    )
    _mark_edited(order)
    return item


def remove_item(order: Dict, item_id, admin_id=None) -> Dict:
    ensure_unlocked(order)
    item = find_item(order, item_id)

    append_adjustment(
        order,
        ADJUSTMENT_REMOVE_ITEM,
        -(int(item["quantity"]) * float(item.get("price_at_purchase") or 0)),
        f"Removed {item['quantity']} unit(s) of product {item.get('product')}",
        admin_id,
    )
    order["items"] = [entry for entry in order["items"] if entry is not item]
    _mark_edited(order)
    return item


def normalize_review_entries(raw_entries) -> Dict[ObjectId, Dict]:
    if not isinstance(raw_entries, list):
        raise OrderValidationError("Items must be a list.")

    reviewed: Dict[ObjectId, Dict] = {}
    for entry in raw_entries:
        if not isinstance(entry, dict):
            raise OrderValidationError("Each reviewed item must be an object.")
        item_id = normalize_object_id(entry.get("itemId") or entry.get("item_id"))
        if not item_id:
            raise OrderValidationError("Each reviewed item needs a valid itemId.")

        availability = str(entry.get("availability") or AVAILABILITY_AVAILABLE).strip().lower()
        if availability not in ITEM_AVAILABILITY_VALUES:
            raise OrderValidationError("Availability must be 'available' or 'missing'.")

        fulfilled = entry.get("fulfilledQuantity", entry.get("fulfilled_quantity"))
        if fulfilled is not None:
            try:
                fulfilled = int(float(fulfilled))
            except (TypeError, ValueError):
                raise OrderValidationError("fulfilledQuantity must be a number.")

        note = entry.get("adminNote", entry.get("admin_note"))
        reviewed[item_id] = {
            "availability": availability,
            "fulfilled_quantity": fulfilled,
            "admin_note": str(note).strip() if note is not None else None,
        }
    return reviewed


def review_fulfillment(order: Dict, raw_entries) -> Dict:
    ensure_unlocked(order)
    reviewed = normalize_review_entries(raw_entries)

    for item in order.get("items") or []:
        entry = reviewed.get(item.get("_id"))
        if entry is None:
            continue
        item["availability"] = entry["availability"]
        if entry["availability"] == AVAILABILITY_MISSING:
            item["fulfilled_quantity"] = 0
        else:
            requested = entry["fulfilled_quantity"]
            if requested is None:
                requested = int(item["quantity"])
            item["fulfilled_quantity"] = min(max(requested, 0), int(item["quantity"]))
        if entry["admin_note"] is not None:
            item["admin_note"] = entry["admin_note"]

    order["fulfillment_status"] = FULFILLMENT_REVIEWED
    recalculate_order_total(order)
    return order


# --- Payments ---


def apply_payment_result(order: Dict, payload: Dict) -> bool:
    """Record a provider result on the order.

    Returns True when the status changed. Terminal orders keep their status
    but still store the payload.
    """
    order["payment_info"] = payload
    provider_status = str((payload or {}).get("status") or "").strip().upper()
    target = PAYMENT_STATUS_MAP.get(provider_status)
    if not target or is_locked(order):
        return False
    return change_status(order, target)


def ledger_total(adjustments: Iterable[Dict]) -> float:
    return round_money(sum(float(entry.get("amount") or 0) for entry in adjustments))
