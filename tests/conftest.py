import os

os.environ.setdefault("DATABASE_TRANSACTIONS", "false")

import mongomock  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from auth import create_access_token  # noqa: E402
from database import ensure_indexes, get_db, now  # noqa: E402
from main import app  # noqa: E402


@pytest.fixture
def db():
    database = mongomock.MongoClient()["agromart_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(role="customer", name=None, is_active=True, **extra):
        counter["n"] += 1
        doc = {
            "name": name or f"{role.title()} {counter['n']}",
            "email": f"{role}{counter['n']}@agromart.com.bd",
            "password_hash": "not-a-real-hash",
            "role": role,
            "is_active": is_active,
            "created_at": now(),
            "updated_at": now(),
            **extra,
        }
        res = db["user"].insert_one(doc)
        doc["id"] = str(res.inserted_id)
        return doc

    return _make


@pytest.fixture
def make_product(db, make_user):
    def _make(seller_id=None, **fields):
        doc = {
            "name": "Organic Tomatoes",
            "category": "crops",
            "price": 80.0,
            "unit": "kg",
            "stock_quantity": 50,
            "min_order_quantity": 1,
            "max_order_quantity": None,
            "status": "ACTIVE",
            "seller_id": seller_id or make_user("seller")["id"],
            "shop_id": None,
            "is_organic": True,
            "images": [],
            "created_at": now(),
            "updated_at": now(),
        }
        doc.update(fields)
        res = db["product"].insert_one(doc)
        doc["id"] = str(res.inserted_id)
        return doc

    return _make


def bearer(user):
    return {"Authorization": f"Bearer {create_access_token({'sub': user['id']})}"}


@pytest.fixture
def headers():
    return bearer
