import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

from auth import create_access_token
from database import create_document, ensure_indexes, get_db
from main import app


@pytest.fixture
def db():
    database = mongomock.MongoClient().coffeeshop
    ensure_indexes(database)
    return database


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


def make_user(db, name, role="customer"):
    uid = create_document("user", {
        "name": name,
        "email": f"{name.lower()}@example.com",
        "password_hash": "not-a-real-hash",
        "role": role,
    }, database=db)
    return db["user"].find_one({"_id": ObjectId(uid)})


def make_product(db, name="Espresso", quantity=0, **extra):
    doc = {
        "name": name,
        "description": "Short and strong",
        "price": 3.5,
        "category": "coffee",
        "images": [],
        "main_image": "/espresso.jpg",
        "in_stock": quantity > 0,
        "quantity": quantity,
        "featured": False,
        "reviews": [],
        "average_rating": 0,
        "ratings_count": 0,
        "stock_version": 0,
    }
    doc.update(extra)
    return create_document("product", doc, database=db)


@pytest.fixture
def admin(db):
    return make_user(db, "Ada", role="admin")


@pytest.fixture
def customer(db):
    return make_user(db, "Carl")


@pytest.fixture
def admin_headers(admin):
    return {"Authorization": f"Bearer {create_access_token({'sub': str(admin['_id'])})}"}


@pytest.fixture
def customer_headers(customer):
    return {"Authorization": f"Bearer {create_access_token({'sub': str(customer['_id'])})}"}
