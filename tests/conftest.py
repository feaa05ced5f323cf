"""
Shared fixtures for the Shop API test suite.

The app talks to an in-memory MongoDB (mongomock) injected through
``app.dependency_overrides`` on ``get_db``; users are inserted directly and
get real JWTs so the auth dependencies run unmodified.
"""
import itertools

import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

from database import create_document, ensure_indexes
from main import app, create_token, get_db, hash_password
from schemas import Category, Product, User


@pytest.fixture
def mongo_db():
    database = mongomock.MongoClient()["shop_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def test_client(mongo_db):
    app.dependency_overrides[get_db] = lambda: mongo_db
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(mongo_db):
    counter = itertools.count(1)

    def factory(name=None, is_admin=False):
        n = next(counter)
        name = name or f"Shopper {n}"
        email = f"user{n}@example.com"
        user = User(name=name, email=email, password_hash=hash_password("secret123"), is_admin=is_admin)
        user_id = create_document("user", user, database=mongo_db)
        token = create_token({"id": user_id, "email": email, "is_admin": is_admin})
        return {
            "id": user_id,
            "name": name,
            "email": email,
            "token": token,
            "headers": {"Authorization": f"Bearer {token}"},
        }

    return factory


@pytest.fixture
def shopper(make_user):
    return make_user(name="Sam Shopper")


@pytest.fixture
def admin(make_user):
    return make_user(name="Ada Admin", is_admin=True)


@pytest.fixture
def category_id(mongo_db):
    return create_document("category", Category(name="Accessories", slug="accessories"), database=mongo_db)


@pytest.fixture
def make_product(mongo_db, category_id):
    """Insert a product and return its id; keyword overrides go straight into the document."""
    counter = itertools.count(1)

    def factory(price=10.0, quantity=5, **overrides):
        n = next(counter)
        data = {
            "name": f"Product {n}",
            "description": "A product used by the test suite.",
            "price": price,
            "category": category_id,
            "brand": "Acme",
            "sku": f"SKU-{n:04d}",
            "inventory": {"quantity": quantity, "low_stock_threshold": 2},
        }
        data.update(overrides)
        return create_document("product", Product(**data), database=mongo_db)

    return factory


@pytest.fixture
def set_product(mongo_db):
    """Change stored product fields behind the API's back (price changes, deactivation, stock)."""

    def setter(product_id, **fields):
        mongo_db["product"].update_one({"_id": ObjectId(product_id)}, {"$set": fields})

    return setter
