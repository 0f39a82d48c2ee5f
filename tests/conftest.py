import os

# the app's own engine must never point at a real database during tests
os.environ["DATABASE_URL"] = "sqlite://"

from datetime import datetime

import pytest
from fastapi.testclient import TestClient

import database
from main import app
from models import Base


def parse_ts(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


@pytest.fixture
def engine(tmp_path):
    engine = database.make_engine(f"sqlite:///{tmp_path / 'storefront.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return database.make_session_factory(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[database.get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(client):
    def _make(email="ada@storefront.io", name="Ada Lovelace", **extra):
        response = client.post("/users", json={"email": email, "name": name, **extra})
        assert response.status_code == 201, response.text
        return response.json()

    return _make


@pytest.fixture
def make_address(client):
    def _make(user_id, type="shipping", street="1 Main St", **extra):
        body = {
            "type": type,
            "street": street,
            "city": "Springfield",
            "state": "IL",
            "country": "US",
            "postal_code": "62701",
            **extra,
        }
        response = client.post(f"/users/{user_id}/addresses", json=body)
        assert response.status_code == 201, response.text
        return response.json()

    return _make


@pytest.fixture
def category(client):
    response = client.post("/categories", json={"name": "Apparel"})
    assert response.status_code == 201, response.text
    return response.json()


@pytest.fixture
def make_product(client, category):
    def _make(name="Classic Tee", price=2000, stock=10, **extra):
        body = {
            "name": name,
            "description": f"{name} description",
            "price": price,
            "category_id": category["id"],
            "stock": stock,
            **extra,
        }
        response = client.post("/products", json=body)
        assert response.status_code == 201, response.text
        return response.json()

    return _make


@pytest.fixture
def product(make_product):
    return make_product(
        variants=[{"name": "M / Black", "price": 2200, "stock": 3, "attributes": {"size": "M", "color": "Black"}}],
        specifications={"material": "cotton"},
        images=[{"url": "https://cdn.storefront.io/tee-1.jpg"}],
    )
