from datetime import datetime
from typing import Dict, Optional


class OrderEventPublisher:
    """Writes order change signals to the ``order_events`` outbox.

    The socket gateway relays ``order.*`` events to the ``order:<id>`` room and
    the cache worker drops materialized order lists on ``orders.stale``.
    Publishing never fails the request that triggered it.
    """

    def __init__(self, db, logger):
        self.collection = db.order_events
        self.logger = logger

    def ensure_indexes(self) -> None:
        self.collection.create_index([("created_at", -1)])
        self.collection.create_index([("type", 1), ("delivered", 1)])

    def _publish(self, event: Dict) -> None:
        event.setdefault("created_at", datetime.utcnow())
        event.setdefault("delivered", False)
        try:
            self.collection.insert_one(event)
        except Exception as exc:
            self.logger.warning("Unable to publish %s event: %s", event.get("type"), exc)

    def orders_stale(self, owner_id) -> None:
        self._publish({"type": "orders.stale", "scope": "admin"})
        if owner_id:
            self._publish({"type": "orders.stale", "scope": f"user:{owner_id}"})

    def order_updated(self, order: Dict, reason: str) -> None:
        rider_id = order.get("rider")
        self._publish(
            {
                "type": "order.updated",
                "room": f"order:{order['_id']}",
                "order_id": str(order["_id"]),
                "status": order.get("status"),
                "rider": str(rider_id) if rider_id else None,
                "reason": reason,
            }
        )

    def order_changed(self, order: Dict, reason: str, notify_subscribers: bool = False) -> None:
        self.orders_stale(order.get("user"))
        if notify_subscribers:
            self.order_updated(order, reason)

    def rider_location(
        self, rider: Dict, lat: float, lng: float, order_id: Optional[str] = None
    ) -> None:
        self._publish(
            {
                "type": "rider.location",
                "room": "riders",
                "rider_id": str(rider["_id"]),
                "name": rider.get("name", "") or "",
                "lat": lat,
                "lng": lng,
            }
        )
        if order_id:
            self._publish(
                {
                    "type": "order:rider-location",
                    "room": f"order:{order_id}",
                    "order_id": str(order_id),
                    "lat": lat,
                    "lng": lng,
                }
            )
