"""Tests for the order HTTP endpoints."""

import pytest

from order_store import OrderRepository
from orders import OrderConflictError


def item_ids(order):
    return [item["id"] for item in order["items"]]


class TestCreateAndRead:
    def test_create_order(self, place_order, users):
        order = place_order()

        assert order["status"] == "created"
        assert order["originalTotal"] == 250
        assert order["finalTotal"] == 250
        assert order["total"] == 250
        assert order["adjustments"] == []
        assert order["user"]["email"] == users["customer"]["email"]
        assert order["items"][0]["product"]["category"]["name"] == "Groceries"
        assert order["shippingAddress"]["city"] == "Nairobi"

    def test_create_without_items(self, client, auth):
        response = client.post("/api/orders", json={"items": []}, headers=auth("customer"))
        assert response.status_code == 400
        assert response.get_json()["message"] == "No items"

    def test_create_with_unknown_product(self, client, auth):
        response = client.post(
            "/api/orders",
            json={"items": [{"product": "65a000000000000000000000", "quantity": 1}]},
            headers=auth("customer"),
        )
        assert response.status_code == 404

    def test_requires_authentication(self, client):
        assert client.get("/api/orders").status_code == 401

    def test_list_scopes(self, client, auth, place_order):
        place_order("customer")
        place_order("other_customer")

        admin_orders = client.get("/api/orders", headers=auth("admin")).get_json()["orders"]
        own_orders = client.get("/api/orders", headers=auth("customer")).get_json()["orders"]

        assert len(admin_orders) == 2
        assert len(own_orders) == 1

    def test_get_order_permissions(self, client, auth, place_order):
        order = place_order()
        url = f"/api/orders/{order['id']}"

        assert client.get(url, headers=auth("customer")).status_code == 200
        assert client.get(url, headers=auth("admin")).status_code == 200
        assert client.get(url, headers=auth("other_customer")).status_code == 403
        assert client.get(url, headers=auth("rider")).status_code == 403

    def test_get_missing_order(self, client, auth):
        response = client.get("/api/orders/not-an-id", headers=auth("admin"))
        assert response.status_code == 404
        assert response.get_json()["message"] == "Order not found"


class TestStatusUpdates:
    def test_customer_cancels_then_edits_are_locked(self, client, auth, place_order, products):
        order = place_order()
        response = client.put(
            f"/api/orders/{order['id']}", json={"status": "cancelled"}, headers=auth("customer")
        )
        assert response.status_code == 200
        assert response.get_json()["order"]["status"] == "cancelled"

        response = client.post(
            f"/api/orders/{order['id']}/items",
            json={"productId": str(products["rice"]["_id"]), "quantity": 1},
            headers=auth("admin"),
        )
        assert response.status_code == 409
        assert "locked" in response.get_json()["message"]

    def test_customer_cannot_ship(self, client, auth, place_order, stored_order):
        order = place_order()
        response = client.put(
            f"/api/orders/{order['id']}", json={"status": "shipped"}, headers=auth("customer")
        )
        assert response.status_code == 403
        assert stored_order(order["id"])["status"] == "created"

    def test_unassigned_rider_forbidden(self, client, auth, place_order, stored_order):
        order = place_order()
        response = client.put(
            f"/api/orders/{order['id']}", json={"status": "shipped"}, headers=auth("rider")
        )
        assert response.status_code == 403
        assert stored_order(order["id"])["status"] == "created"

    def test_stranger_forbidden(self, client, auth, place_order):
        order = place_order()
        response = client.put(
            f"/api/orders/{order['id']}", json={"status": "cancelled"}, headers=auth("other_customer")
        )
        assert response.status_code == 403

    def test_invalid_status(self, client, auth, place_order):
        order = place_order()
        response = client.put(
            f"/api/orders/{order['id']}", json={"status": "teleported"}, headers=auth("admin")
        )
        assert response.status_code == 400
        assert response.get_json()["message"] == "Invalid status"

    def test_admin_sets_status_and_rider(self, client, auth, place_order, users, db):
        order = place_order()
        response = client.put(
            f"/api/orders/{order['id']}",
            json={"status": "paid", "rider": str(users["rider"]["_id"])},
            headers=auth("admin"),
        )
        body = response.get_json()["order"]

        assert response.status_code == 200
        assert body["status"] == "paid"
        assert body["rider"]["email"] == users["rider"]["email"]
        assert db.audit_logs.count_documents({"action": "Updated order"}) == 1

    def test_admin_update_without_changes_is_not_saved(self, client, auth, place_order, stored_order, db):
        order = place_order()
        events_before = db.order_events.count_documents({})

        response = client.put(f"/api/orders/{order['id']}", json={}, headers=auth("admin"))
        same_status = client.put(
            f"/api/orders/{order['id']}", json={"status": "created"}, headers=auth("admin")
        )

        assert response.status_code == 200
        assert same_status.status_code == 200
        assert stored_order(order["id"])["version"] == order["version"]
        assert db.order_events.count_documents({}) == events_before
        assert db.audit_logs.count_documents({"action": "Updated order"}) == 0

    def test_admin_invalid_rider_leaves_order(self, client, auth, place_order, users, stored_order):
        order = place_order()
        response = client.put(
            f"/api/orders/{order['id']}",
            json={"status": "paid", "rider": str(users["customer"]["_id"])},
            headers=auth("admin"),
        )
        assert response.status_code == 400
        assert response.get_json()["message"] == "Invalid rider"

        stored = stored_order(order["id"])
        assert stored["status"] == "created"
        assert stored["rider"] is None

    def test_assigned_rider_limited_statuses(self, client, auth, place_order, users):
        order = place_order()
        client.post(
            f"/api/orders/{order['id']}/assign-rider",
            json={"riderId": str(users["rider"]["_id"])},
            headers=auth("admin"),
        )
        url = f"/api/orders/{order['id']}"

        assert client.put(url, json={"status": "cancelled"}, headers=auth("rider")).status_code == 403
        assert client.put(url, json={}, headers=auth("rider")).status_code == 400
        response = client.put(url, json={"status": "completed"}, headers=auth("rider"))
        assert response.status_code == 200
        assert response.get_json()["order"]["status"] == "completed"

    def test_status_change_signals_subscribers(self, client, auth, place_order, db):
        order = place_order()
        client.put(f"/api/orders/{order['id']}", json={"status": "paid"}, headers=auth("admin"))

        assert db.order_events.count_documents(
            {"type": "order.updated", "room": f"order:{order['id']}", "status": "paid"}
        ) == 1
        assert db.order_events.count_documents({"type": "orders.stale", "scope": "admin"}) >= 2


class TestRiderAssignment:
    def test_assign_rider(self, client, auth, place_order, users, db):
        order = place_order()
        url = f"/api/orders/{order['id']}/assign-rider"
        payload = {"riderId": str(users["rider"]["_id"])}

        response = client.post(url, json=payload, headers=auth("admin"))
        body = response.get_json()

        assert response.status_code == 200
        assert body["message"] == "Rider assigned successfully"
        assert body["order"]["status"] == "shipped"

        client.post(url, json=payload, headers=auth("admin"))
        rider = db.users.find_one({"_id": users["rider"]["_id"]})
        assert [str(order_id) for order_id in rider["assigned_orders"]] == [order["id"]]

    def test_assign_rider_validations(self, client, auth, place_order, users):
        order = place_order()
        url = f"/api/orders/{order['id']}/assign-rider"

        assert client.post(url, json={}, headers=auth("admin")).status_code == 400
        assert (
            client.post(url, json={"riderId": str(users["customer"]["_id"])}, headers=auth("admin")).status_code
            == 400
        )
        assert (
            client.post(url, json={"riderId": str(users["rider"]["_id"])}, headers=auth("customer")).status_code
            == 403
        )

    def test_complete_by_assigned_rider_only(self, client, auth, place_order, users):
        order = place_order()
        client.post(
            f"/api/orders/{order['id']}/assign-rider",
            json={"riderId": str(users["rider"]["_id"])},
            headers=auth("admin"),
        )
        url = f"/api/orders/{order['id']}/complete"

        assert client.put(url, headers=auth("other_rider")).status_code == 403
        assert client.put(url, headers=auth("customer")).status_code == 403
        response = client.put(url, headers=auth("rider"))
        assert response.status_code == 200
        assert response.get_json()["order"]["status"] == "completed"

    def test_complete_cancelled_order_is_locked(self, client, auth, place_order):
        order = place_order()
        client.put(f"/api/orders/{order['id']}", json={"status": "cancelled"}, headers=auth("customer"))
        response = client.put(f"/api/orders/{order['id']}/complete", headers=auth("admin"))
        assert response.status_code == 409

    def test_rider_accept_deliver_and_list(self, client, auth, place_order, users):
        order = place_order()
        place_order()
        client.put(
            f"/api/orders/{order['id']}",
            json={"rider": str(users["rider"]["_id"])},
            headers=auth("admin"),
        )

        accept = client.post(f"/api/rider/orders/{order['id']}/accept", headers=auth("rider"))
        assert accept.get_json()["order"]["status"] == "shipped"
        deliver = client.post(f"/api/rider/orders/{order['id']}/deliver", headers=auth("rider"))
        assert deliver.get_json()["order"]["status"] == "completed"

        listed = client.get("/api/riders/orders", headers=auth("rider")).get_json()["orders"]
        assert [entry["id"] for entry in listed] == [order["id"]]
        assert client.get("/api/riders/orders", headers=auth("customer")).status_code == 403

    def test_rider_location_broadcast(self, client, auth, place_order, users, db):
        order = place_order()
        client.post(
            f"/api/orders/{order['id']}/assign-rider",
            json={"riderId": str(users["rider"]["_id"])},
            headers=auth("admin"),
        )
        response = client.post(
            "/api/rider/location",
            json={"lat": -1.28, "lng": 36.82, "orderId": order["id"]},
            headers=auth("rider"),
        )

        assert response.status_code == 200
        assert db.order_events.count_documents(
            {"type": "order:rider-location", "room": f"order:{order['id']}"}
        ) == 1
        assert db.users.find_one({"_id": users["rider"]["_id"]})["current_location"] == {
            "lat": -1.28,
            "lng": 36.82,
        }

    def test_rider_location_requires_numbers(self, client, auth):
        response = client.post("/api/rider/location", json={"lat": "x", "lng": 1}, headers=auth("rider"))
        assert response.status_code == 400

    def test_live_riders_report_location(self, client, auth, users):
        client.post("/api/rider/location", json={"lat": -1.28, "lng": 36.82}, headers=auth("rider"))

        response = client.get("/api/admin/riders/live", headers=auth("admin"))
        riders = {entry["email"]: entry for entry in response.get_json()["riders"]}

        assert response.status_code == 200
        assert set(riders) == {users["rider"]["email"], users["other_rider"]["email"]}
        assert riders[users["rider"]["email"]]["currentLocation"] == {"lat": -1.28, "lng": 36.82}
        assert riders[users["rider"]["email"]]["isOnline"] is True
        assert riders[users["rider"]["email"]]["lastSeen"]
        assert riders[users["other_rider"]["email"]]["isOnline"] is False
        assert riders[users["other_rider"]["email"]]["currentLocation"] is None

    def test_riders_with_orders(self, client, auth, place_order, users):
        dispatched = place_order()
        place_order()
        client.post(
            f"/api/orders/{dispatched['id']}/assign-rider",
            json={"riderId": str(users["rider"]["_id"])},
            headers=auth("admin"),
        )

        body = client.get("/api/admin/riders/with-orders", headers=auth("admin")).get_json()

        assert [order["id"] for order in body["orders"]] == [dispatched["id"]]
        assert body["orders"][0]["rider"]["email"] == users["rider"]["email"]
        riders = {entry["email"]: entry for entry in body["riders"]}
        assert riders[users["rider"]["email"]]["assignedOrders"] == [dispatched["id"]]

    @pytest.mark.parametrize("url", ["/api/admin/riders/live", "/api/admin/riders/with-orders"])
    def test_rider_directory_admin_only(self, client, auth, url):
        assert client.get(url, headers=auth("rider")).status_code == 403
        assert client.get(url, headers=auth("customer")).status_code == 403

    def test_rider_destination(self, client, auth, users, db):
        route = {"start": {"lat": -1.28, "lng": 36.82}, "end": {"lat": -1.3, "lng": 36.8}}
        response = client.post("/api/rider/destination", json=route, headers=auth("rider"))

        assert response.status_code == 200
        assert response.get_json()["routePlan"] == route
        assert db.users.find_one({"_id": users["rider"]["_id"]})["route_plan"]["end"] == route["end"]

        assert client.post(
            "/api/rider/destination", json={"start": route["start"]}, headers=auth("rider")
        ).status_code == 400
        assert client.post("/api/rider/destination", json=route, headers=auth("customer")).status_code == 403


class TestFulfillmentAdjustments:
    def test_full_adjustment_scenario(self, client, auth, place_order, products):
        order = place_order()
        rice_id, milk_id = item_ids(order)
        base = f"/api/orders/{order['id']}"

        added = client.post(
            f"{base}/items",
            json={"productId": str(products["rice"]["_id"]), "quantity": 1},
            headers=auth("admin"),
        ).get_json()["order"]
        assert added["items"][0]["quantity"] == 3
        assert added["adjustments"][-1]["type"] == "add_item"
        assert added["adjustments"][-1]["amount"] == 100
        assert added["finalTotal"] == 350
        assert added["fulfillmentStatus"] == "pending"

        removed = client.delete(f"{base}/items/{milk_id}", headers=auth("admin")).get_json()["order"]
        assert removed["adjustments"][-1]["amount"] == -50
        assert removed["finalTotal"] == 300

        reviewed = client.put(
            f"{base}/fulfillment",
            json={"items": [{"itemId": rice_id, "availability": "missing"}]},
            headers=auth("admin"),
        ).get_json()["order"]
        assert reviewed["finalTotal"] == 0
        assert reviewed["fulfillmentStatus"] == "reviewed"
        assert len(reviewed["adjustments"]) == 2
        assert reviewed["originalTotal"] == 250

    def test_update_quantity(self, client, auth, place_order):
        order = place_order()
        rice_id = item_ids(order)[0]
        response = client.put(
            f"/api/orders/{order['id']}/items/{rice_id}", json={"quantity": 5}, headers=auth("admin")
        )
        body = response.get_json()["order"]

        assert body["adjustments"][-1]["type"] == "manual"
        assert body["adjustments"][-1]["amount"] == 300
        assert body["items"][0]["quantity"] == 5
        assert body["finalTotal"] == 550

    def test_quantity_decrease_after_review(self, client, auth, place_order):
        order = place_order()
        rice_id = item_ids(order)[0]
        base = f"/api/orders/{order['id']}"
        client.put(
            f"{base}/fulfillment",
            json={"items": [{"itemId": rice_id, "fulfilledQuantity": 2}]},
            headers=auth("admin"),
        )

        body = client.put(
            f"{base}/items/{rice_id}", json={"quantity": 1}, headers=auth("admin")
        ).get_json()["order"]

        assert body["items"][0]["quantity"] == 1
        assert body["items"][0]["fulfilledQuantity"] == 1
        assert body["finalTotal"] == 150
        assert [entry["amount"] for entry in body["adjustments"]] == [-100]

    def test_non_positive_quantity_rejected(self, client, auth, place_order, stored_order):
        order = place_order()
        rice_id = item_ids(order)[0]
        response = client.put(
            f"/api/orders/{order['id']}/items/{rice_id}", json={"quantity": 0}, headers=auth("admin")
        )
        assert response.status_code == 400
        assert stored_order(order["id"])["adjustments"] == []

    def test_unknown_item(self, client, auth, place_order):
        order = place_order()
        response = client.delete(
            f"/api/orders/{order['id']}/items/65a000000000000000000000", headers=auth("admin")
        )
        assert response.status_code == 404

    def test_unknown_product(self, client, auth, place_order):
        order = place_order()
        response = client.post(
            f"/api/orders/{order['id']}/items",
            json={"productId": "65a000000000000000000000"},
            headers=auth("admin"),
        )
        assert response.status_code == 404

    @pytest.mark.parametrize("role", ["customer", "rider"])
    def test_admin_only(self, client, auth, place_order, products, role):
        order = place_order()
        response = client.post(
            f"/api/orders/{order['id']}/items",
            json={"productId": str(products["bread"]["_id"])},
            headers=auth(role),
        )
        assert response.status_code == 403

    def test_malformed_review(self, client, auth, place_order):
        order = place_order()
        response = client.put(
            f"/api/orders/{order['id']}/fulfillment", json={"items": "all"}, headers=auth("admin")
        )
        assert response.status_code == 400

    def test_edits_mark_lists_stale_for_owner(self, client, auth, place_order, products, users, db):
        order = place_order()
        before = db.order_events.count_documents({"scope": f"user:{users['customer']['_id']}"})
        client.post(
            f"/api/orders/{order['id']}/items",
            json={"productId": str(products["bread"]["_id"])},
            headers=auth("admin"),
        )
        after = db.order_events.count_documents({"scope": f"user:{users['customer']['_id']}"})
        assert after == before + 1


class TestOptimisticConcurrency:
    def test_stale_save_is_rejected(self, db, place_order):
        order = place_order()
        repository = OrderRepository(db)

        first = repository.get(order["id"])
        second = repository.get(order["id"])
        first["status"] = "paid"
        repository.save(first)

        second["status"] = "cancelled"
        with pytest.raises(OrderConflictError):
            repository.save(second)

        stored = repository.get(order["id"])
        assert stored["status"] == "paid"
        assert stored["version"] == 1
