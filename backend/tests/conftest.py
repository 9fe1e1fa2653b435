"""Pytest fixtures for the order backend tests."""

from datetime import datetime

import mongomock
import pytest
from bson import ObjectId
from flask_jwt_extended import create_access_token

from app import create_app

CALLBACK_TOKEN = "test-callback-token"


@pytest.fixture
def db():
    """In-memory MongoDB database."""
    return mongomock.MongoClient().orderdesk


@pytest.fixture
def app(db):
    return create_app(
        {
            "TESTING": True,
            "JWT_SECRET_KEY": "test-secret-key-with-enough-length-for-hs256",
            "MPESA_CALLBACK_TOKEN": CALLBACK_TOKEN,
        },
        db=db,
    )


@pytest.fixture
def client(app):
    return app.test_client()


def _insert_user(db, email, name, role):
    document = {
        "email": email,
        "name": name,
        "phone": "0700000000",
        "role": role,
        "assigned_orders": [],
        "created_at": datetime.utcnow(),
    }
    document["_id"] = db.users.insert_one(document).inserted_id
    return document


@pytest.fixture
def users(db):
    return {
        "admin": _insert_user(db, "boss@shop.test", "Admin", "admin"),
        "customer": _insert_user(db, "jane@shop.test", "Jane", "customer"),
        "other_customer": _insert_user(db, "omar@shop.test", "Omar", "customer"),
        "rider": _insert_user(db, "rita@shop.test", "Rita", "rider"),
        "other_rider": _insert_user(db, "ravi@shop.test", "Ravi", "rider"),
    }


@pytest.fixture
def products(db):
    category_id = db.categories.insert_one({"name": "Groceries"}).inserted_id
    documents = {
        "rice": {"title": "Rice 2kg", "price": 100.0, "stock": 20, "category": category_id},
        "milk": {"title": "Milk 1L", "price": 50.0, "stock": 40, "category": category_id},
        "bread": {"title": "Bread", "price": 60.0, "stock": 10, "category": category_id},
    }
    for document in documents.values():
        document["_id"] = db.products.insert_one(document).inserted_id
    return documents


@pytest.fixture
def auth(app, users):
    """Return Authorization headers for one of the seeded users."""

    def _headers(name):
        with app.app_context():
            token = create_access_token(identity=users[name]["email"])
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
def place_order(client, auth, products):
    """Create the standard two-line order (2 x 100 + 1 x 50) as the customer."""

    def _place(owner="customer"):
        response = client.post(
            "/api/orders",
            json={
                "items": [
                    {"product": str(products["rice"]["_id"]), "quantity": 2},
                    {"product": str(products["milk"]["_id"]), "quantity": 1},
                ],
                "shippingAddress": {"city": "Nairobi", "line1": "Moi Avenue 1"},
            },
            headers=auth(owner),
        )
        assert response.status_code == 201
        return response.get_json()["order"]

    return _place


@pytest.fixture
def stored_order(db):
    def _load(order_id):
        return db.orders.find_one({"_id": ObjectId(order_id)})

    return _load


@pytest.fixture
def callback_headers():
    return {"X-Callback-Token": CALLBACK_TOKEN}
