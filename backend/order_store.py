from datetime import datetime, timedelta
from typing import Dict, List, Optional

from bson import ObjectId
from pymongo import ReturnDocument

from orders import (
    OrderConflictError,
    OrderNotFoundError,
    effective_quantity,
    normalize_object_id,
    round_money,
    user_role,
)

ORDER_REFERENCE_PREFIX = "ORDER-"
# Riders that reported a location within this window count as online.
RIDER_ONLINE_WINDOW = timedelta(minutes=5)


def format_timestamp(value) -> Optional[str]:
    if not isinstance(value, datetime):
        return None
    return value.isoformat() if value.tzinfo is not None else f"{value.isoformat()}Z"


def order_reference(order_id) -> str:
    return f"{ORDER_REFERENCE_PREFIX}{order_id}"


def parse_order_reference(value) -> Optional[ObjectId]:
    candidate = str(value or "").strip()
    if candidate.upper().startswith(ORDER_REFERENCE_PREFIX):
        candidate = candidate[len(ORDER_REFERENCE_PREFIX):]
    return normalize_object_id(candidate) if candidate else None


class OrderRepository:
    """MongoDB persistence for orders and the catalog/user lookups they need.

    Saves are conditional on the ``version`` read with the order, so two
    writers racing on the same order cannot silently overwrite each other.
    """

    def __init__(self, db):
        self.db = db
        self.orders = db.orders

    def ensure_indexes(self) -> None:
        self.orders.create_index([("user", 1), ("created_at", -1)])
        self.orders.create_index([("rider", 1), ("created_at", -1)])
        self.orders.create_index("checkout_request_id", sparse=True)

    # --- Orders ---

    def get(self, order_id) -> Dict:
        object_id = normalize_object_id(order_id)
        order = self.orders.find_one({"_id": object_id}) if object_id else None
        if not order:
            raise OrderNotFoundError("Order not found")
        return order

    def insert(self, order: Dict) -> Dict:
        result = self.orders.insert_one(order)
        order["_id"] = result.inserted_id
        return order

    def save(self, order: Dict) -> Dict:
        expected_version = int(order.get("version") or 0)
        order["version"] = expected_version + 1
        order["updated_at"] = datetime.utcnow()

        result = self.orders.replace_one(
            {"_id": order["_id"], "version": expected_version}, order
        )
        if result.matched_count == 0:
            order["version"] = expected_version
            raise OrderConflictError()
        return order

    def set_checkout_request(self, order_id: ObjectId, checkout_request_id: str) -> Optional[Dict]:
        return self.orders.find_one_and_update(
            {"_id": order_id},
            {
                "$set": {
                    "checkout_request_id": checkout_request_id,
                    "updated_at": datetime.utcnow(),
                },
                "$inc": {"version": 1},
            },
            return_document=ReturnDocument.AFTER,
        )

    def find_for_payment(
        self, reference: Optional[str] = None, checkout_request_id: Optional[str] = None
    ) -> Optional[Dict]:
        order_id = parse_order_reference(reference)
        if order_id:
            order = self.orders.find_one({"_id": order_id})
            if order:
                return order
        if checkout_request_id:
            return self.orders.find_one({"checkout_request_id": str(checkout_request_id)})
        return None

    def list_for(self, user: Dict) -> List[Dict]:
        query = {} if user_role(user) == "admin" else {"user": user["_id"]}
        return list(self.orders.find(query).sort([("created_at", -1), ("_id", -1)]))

    def list_for_rider(self, rider_id: ObjectId) -> List[Dict]:
        cursor = self.orders.find({"rider": rider_id}).sort(
            [("created_at", -1), ("_id", -1)]
        )
        return list(cursor)

    def list_dispatched(self) -> List[Dict]:
        cursor = self.orders.find({"rider": {"$ne": None}}).sort(
            [("created_at", -1), ("_id", -1)]
        )
        return list(cursor)

    def list_riders(self) -> List[Dict]:
        return list(self.db.users.find({"role": "rider"}).sort("name", 1))

    def set_route_plan(self, user_id: ObjectId, start, end) -> Dict:
        route_plan = {"start": start, "end": end, "updated_at": datetime.utcnow()}
        self.db.users.update_one({"_id": user_id}, {"$set": {"route_plan": route_plan}})
        return route_plan

    # --- Collaborators ---

    def get_product(self, product_id) -> Dict:
        object_id = normalize_object_id(product_id)
        product = self.db.products.find_one({"_id": object_id}) if object_id else None
        if not product:
            raise OrderNotFoundError("Product not found.")
        return product

    def find_products(self, product_ids) -> Dict[ObjectId, Dict]:
        unique_ids = list({pid for pid in product_ids if pid})
        if not unique_ids:
            return {}
        return {
            document["_id"]: document
            for document in self.db.products.find({"_id": {"$in": unique_ids}})
        }

    def get_user(self, user_id) -> Optional[Dict]:
        object_id = normalize_object_id(user_id)
        return self.db.users.find_one({"_id": object_id}) if object_id else None

    def add_assigned_order(self, rider_id: ObjectId, order_id: ObjectId) -> None:
        self.db.users.update_one(
            {"_id": rider_id}, {"$addToSet": {"assigned_orders": order_id}}
        )

    # --- Read-side projection ---

    def populate(self, orders: List[Dict]) -> List[Dict]:
        user_ids = set()
        product_ids = set()
        for order in orders:
            user_ids.add(order.get("user"))
            if order.get("rider"):
                user_ids.add(order["rider"])
            for item in order.get("items") or []:
                product_ids.add(item.get("product"))

        users = {
            document["_id"]: document
            for document in self.db.users.find({"_id": {"$in": [uid for uid in user_ids if uid]}})
        }
        products = self.find_products(product_ids)
        category_ids = [p.get("category") for p in products.values() if p.get("category")]
        categories = {
            document["_id"]: document
            for document in self.db.categories.find({"_id": {"$in": category_ids}})
        } if category_ids else {}

        return [
            serialize_order(order, users=users, products=products, categories=categories)
            for order in orders
        ]

    def populate_one(self, order: Dict) -> Dict:
        return self.populate([order])[0]


def serialize_user_summary(user_document: Optional[Dict], fallback_id=None) -> Optional[Dict]:
    if not user_document:
        return {"id": str(fallback_id)} if fallback_id else None
    return {
        "id": str(user_document["_id"]),
        "name": user_document.get("name", "") or "",
        "email": user_document.get("email", "") or "",
        "phone": user_document.get("phone", "") or "",
    }


def serialize_rider(user_document: Dict, now: Optional[datetime] = None) -> Dict:
    now = now or datetime.utcnow()
    last_seen = user_document.get("last_seen")
    online = isinstance(last_seen, datetime) and now - last_seen <= RIDER_ONLINE_WINDOW
    route_plan = user_document.get("route_plan")
    return {
        **serialize_user_summary(user_document),
        "isOnline": bool(online),
        "lastSeen": format_timestamp(last_seen),
        "currentLocation": user_document.get("current_location"),
        "assignedOrders": [str(order_id) for order_id in user_document.get("assigned_orders") or []],
        "routePlan": (
            {"start": route_plan.get("start"), "end": route_plan.get("end")} if route_plan else None
        ),
    }


def serialize_product_summary(
    product_document: Optional[Dict], categories: Dict, fallback_id=None
) -> Dict:
    if not product_document:
        return {"id": str(fallback_id) if fallback_id else ""}
    category = categories.get(product_document.get("category"))
    return {
        "id": str(product_document["_id"]),
        "title": product_document.get("title") or product_document.get("name") or "",
        "price": round_money(product_document.get("price")),
        "stock": int(product_document.get("stock") or 0),
        "category": {
            "id": str(category["_id"]),
            "name": category.get("name", "") or "",
        }
        if category
        else None,
    }


def serialize_adjustment(entry: Dict) -> Dict:
    admin_id = entry.get("admin")
    return {
        "type": entry.get("type"),
        "amount": round_money(entry.get("amount")),
        "note": entry.get("note") or "",
        "createdAt": format_timestamp(entry.get("created_at")),
        "admin": str(admin_id) if admin_id else None,
    }


def serialize_order(
    order: Dict,
    users: Optional[Dict] = None,
    products: Optional[Dict] = None,
    categories: Optional[Dict] = None,
) -> Dict:
    users = users or {}
    products = products or {}
    categories = categories or {}

    serialized_items = []
    for item in order.get("items") or []:
        price = round_money(item.get("price_at_purchase"))
        serialized_items.append(
            {
                "id": str(item.get("_id")),
                "product": serialize_product_summary(
                    products.get(item.get("product")), categories, item.get("product")
                ),
                "quantity": int(item.get("quantity") or 0),
                "priceAtPurchase": price,
                "fulfilledQuantity": item.get("fulfilled_quantity"),
                "availability": item.get("availability") or "available",
                "adminNote": item.get("admin_note"),
                "lineTotal": round_money(
                    0 if item.get("availability") == "missing" else effective_quantity(item) * price
                ),
            }
        )

    rider_id = order.get("rider")
    return {
        "id": str(order.get("_id")),
        "reference": order_reference(order.get("_id")),
        "user": serialize_user_summary(users.get(order.get("user")), order.get("user")),
        "rider": serialize_user_summary(users.get(rider_id), rider_id) if rider_id else None,
        "items": serialized_items,
        "status": order.get("status"),
        "fulfillmentStatus": order.get("fulfillment_status"),
        "originalTotal": round_money(order.get("original_total")),
        "finalTotal": round_money(order.get("final_total")),
        "total": round_money(order.get("total")),
        "reviewDelta": round_money(order.get("review_delta")),
        "adjustments": [serialize_adjustment(entry) for entry in order.get("adjustments") or []],
        "shippingAddress": order.get("shipping_address") or {},
        "paymentInfo": order.get("payment_info"),
        "version": int(order.get("version") or 0),
        "createdAt": format_timestamp(order.get("created_at")),
        "updatedAt": format_timestamp(order.get("updated_at")),
    }
