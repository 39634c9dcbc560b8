import mongomock
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from auth import hash_password
from config import Settings
from database import ADMINS, PRODUCTS, create_document
from main import create_app

SEED_PRODUCTS = [
    {"sku": "HP-100", "name": "Wireless Headphones", "price": 10.0, "category": "Electronics", "stock": 5},
    {"sku": "CB-200", "name": "USB Cable", "price": 5.0, "category": "Electronics", "stock": 3},
    {"sku": "MG-300", "name": "Coffee Mug", "price": 12.5, "category": "Kitchen", "stock": 20},
    {"sku": "TS-400", "name": "Graphic Tee", "price": 24.0, "category": "Apparel", "stock": 0},
    {"sku": "KT-500", "name": "Kettle (Steel)", "price": 39.99, "category": "Kitchen", "stock": 7},
]


@pytest.fixture
def settings():
    return Settings(jwt_secret="test-secret", bcrypt_rounds=4)


@pytest.fixture
def mongo_db():
    return mongomock.MongoClient()["storefront_test"]


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    yield engine
    engine.dispose()


@pytest.fixture
def app(settings, mongo_db, engine):
    return create_app(settings, mongo_db=mongo_db, engine=engine)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def catalog(client, app):
    return app.state.catalog


@pytest.fixture
def carts(client, app):
    return app.state.carts


@pytest.fixture
def order_service(client, app):
    return app.state.orders


@pytest.fixture
def products(client, mongo_db):
    """sku -> product id"""
    return {p["sku"]: create_document(mongo_db, PRODUCTS, dict(p)) for p in SEED_PRODUCTS}


@pytest.fixture
def admin(client, mongo_db):
    create_document(mongo_db, ADMINS, {
        "name": "Store Admin",
        "email": "admin@example.com",
        "password": hash_password("adminpass", rounds=4),
        "role": "admin",
        "permissions": ["products", "orders"],
        "is_active": True,
    })
    return {"email": "admin@example.com", "password": "adminpass"}


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def register(client):
    """Register a customer and return (user, auth headers). Cookies are dropped so headers decide who calls."""
    def _register(email="shopper@example.com", name="Test Shopper", password="password123"):
        resp = client.post("/api/auth/register", json={
            "name": name,
            "email": email,
            "password": password,
            "confirm_password": password,
        })
        assert resp.status_code == 201, resp.text
        client.cookies.clear()
        body = resp.json()
        return body["user"], bearer(body["token"])
    return _register


@pytest.fixture
def admin_headers(client, admin):
    resp = client.post("/api/auth/login", json=admin)
    assert resp.status_code == 200, resp.text
    client.cookies.clear()
    return bearer(resp.json()["token"])
