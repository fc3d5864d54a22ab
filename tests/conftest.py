import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

import database
import main
import messages
import realtime
import security
from schemas import User as UserSchema, Product as ProductSchema


@pytest.fixture
def mongo(monkeypatch):
    test_db = mongomock.MongoClient()["farmbros_test"]
    for module in (database, security, messages, main):
        monkeypatch.setattr(module, "db", test_db)
    return test_db


@pytest.fixture
def emitted(monkeypatch):
    """Every Socket.IO emission made during a test, in order."""
    calls = []

    async def fake_emit(event, data=None, to=None, room=None, skip_sid=None, namespace=None, callback=None,
                        **kwargs):
        calls.append({"event": event, "data": data, "room": room if room is not None else to, "skip_sid": skip_sid})

    monkeypatch.setattr(realtime.sio, "emit", fake_emit)
    return calls


@pytest.fixture
def client(mongo, emitted):
    with TestClient(main.app) as c:
        yield c


def make_user(name, email, role="user", password="secret123"):
    user = UserSchema(name=name, email=email, hashed_password=security.hash_password(password), role=role)
    inserted = database.create_document("user", user)
    return database.db["user"].find_one({"_id": ObjectId(inserted)})


def auth_header(user):
    return {"Authorization": f"Bearer {security.create_token(user)}"}


def make_product(seller, **overrides):
    data = {
        "name": "Organic Tomatoes",
        "description": "Fresh red tomatoes",
        "price": 4.0,
        "category": "vegetables",
        "stock": 50,
        "unit": "kg",
        "min_order_quantity": 1,
        "max_order_quantity": 10,
        "farm_location": "Nashik",
        "seller": str(seller["_id"]),
    }
    data.update(overrides)
    inserted = database.create_document("product", ProductSchema(**data))
    return database.db["product"].find_one({"_id": ObjectId(inserted)})


@pytest.fixture
def admin(mongo):
    return make_user("Admin", "admin@farmbros.com", role="admin")


@pytest.fixture
def user(mongo):
    return make_user("Asha Patel", "asha@example.com")


@pytest.fixture
def other_user(mongo):
    return make_user("Ravi Kumar", "ravi@example.com")


@pytest.fixture
def product(admin):
    return make_product(admin)
