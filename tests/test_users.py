from sqlalchemy import func, inspect, select

import database
from conftest import parse_ts
from models import Address, Cart, UserPreferences, Wishlist


def test_root_and_config(client):
    assert client.get("/").json()["status"] == "ok"
    config = client.get("/config").json()
    assert config["currency"] == "USD"
    assert set(config["shipping"]) == {"standard", "express", "next_day"}


def test_lifespan_creates_tables_on_app_engine(client):
    # the app's own engine is the in-memory one set up in conftest
    assert inspect(database.engine).has_table("orders")


def test_create_user_sets_up_preferences_and_cart(client, make_user):
    user = make_user()
    assert user["role"] == "customer"

    prefs = client.get(f"/users/{user['id']}/preferences").json()
    assert prefs["theme"] == "system"
    assert prefs["push_notifications"] is True
    assert prefs["sms_notifications"] is False

    cart = client.get(f"/users/{user['id']}/cart").json()
    assert cart["items"] == []
    assert cart["totals"] == {"subtotal": 0, "tax": 0, "shipping": 0, "total": 0}


def test_duplicate_email_is_a_conflict(client, make_user):
    make_user()
    response = client.post("/users", json={"email": "ada@storefront.io", "name": "Other Ada"})
    assert response.status_code == 409
    assert response.json()["error"] == "constraint_violation"


def test_invalid_role_and_email_are_rejected(client):
    assert client.post("/users", json={"email": "x@storefront.io", "name": "X", "role": "root"}).status_code == 422
    assert client.post("/users", json={"email": "not-an-email", "name": "X"}).status_code == 422


def test_unknown_user_is_404(client):
    response = client.get("/users/00000000-0000-0000-0000-000000000000")
    assert response.status_code == 404
    assert response.json() == {"error": "not_found", "detail": "User not found"}


def test_update_user_advances_updated_at(client, make_user):
    user = make_user()
    again = client.get(f"/users/{user['id']}").json()
    assert again["updated_at"] == user["updated_at"]

    updated = client.patch(f"/users/{user['id']}", json={"phone": "555-0100"}).json()
    assert updated["phone"] == "555-0100"
    assert parse_ts(updated["updated_at"]) > parse_ts(user["updated_at"])

    taken = client.post("/users", json={"email": "grace@storefront.io", "name": "Grace"}).json()
    response = client.patch(f"/users/{taken['id']}", json={"email": "ada@storefront.io"})
    assert response.status_code == 409


def test_update_preferences(client, make_user):
    user = make_user()
    before = client.get(f"/users/{user['id']}/preferences").json()
    after = client.patch(
        f"/users/{user['id']}/preferences", json={"theme": "dark", "price_alerts": False}
    ).json()
    assert after["theme"] == "dark"
    assert after["price_alerts"] is False
    assert after["stock_alerts"] is True
    assert parse_ts(after["updated_at"]) > parse_ts(before["updated_at"])


def test_first_address_of_each_type_becomes_default(client, make_user, make_address):
    user = make_user()
    shipping = make_address(user["id"])
    billing = make_address(user["id"], type="billing")
    second = make_address(user["id"], street="2 Side St")
    assert shipping["is_default"] and billing["is_default"]
    assert second["is_default"] is False


def test_only_one_default_address_per_type(client, make_user, make_address):
    user = make_user()
    first = make_address(user["id"])
    billing = make_address(user["id"], type="billing")
    second = make_address(user["id"], street="2 Side St", is_default=True)
    assert second["is_default"] is True

    addresses = {a["id"]: a for a in client.get(f"/users/{user['id']}/addresses").json()}
    assert addresses[first["id"]]["is_default"] is False
    assert addresses[billing["id"]]["is_default"] is True

    client.patch(f"/users/{user['id']}/addresses/{first['id']}", json={"is_default": True})
    addresses = {a["id"]: a for a in client.get(f"/users/{user['id']}/addresses").json()}
    assert addresses[first["id"]]["is_default"] is True
    assert addresses[second["id"]]["is_default"] is False
    assert addresses[billing["id"]]["is_default"] is True


def test_moving_default_address_to_other_type_drops_default(client, make_user, make_address):
    user = make_user()
    make_address(user["id"], type="billing")
    shipping = make_address(user["id"])
    moved = client.patch(f"/users/{user['id']}/addresses/{shipping['id']}", json={"type": "billing"}).json()
    assert moved["type"] == "billing"
    assert moved["is_default"] is False


def test_address_of_another_user_is_not_found(client, make_user, make_address):
    ada = make_user()
    grace = make_user(email="grace@storefront.io", name="Grace")
    address = make_address(ada["id"])
    assert client.delete(f"/users/{grace['id']}/addresses/{address['id']}").status_code == 404
    assert client.delete(f"/users/{ada['id']}/addresses/{address['id']}").json()["deleted"] is True


def test_delete_user_keeps_orders_and_reviews(client, db, make_user, make_address, product):
    user = make_user()
    make_address(user["id"])
    client.post(f"/users/{user['id']}/cart/items", json={"product_id": product["id"], "quantity": 1})
    order = client.post(f"/users/{user['id']}/checkout", json={"payment_method": "paypal"}).json()
    wishlist = client.post(f"/users/{user['id']}/wishlists", json={"name": "Someday"}).json()
    client.post(f"/wishlists/{wishlist['id']}/items", json={"product_id": product["id"]})
    review = client.post(
        f"/products/{product['id']}/reviews", json={"user_id": user["id"], "rating": 5, "comment": "Great"}
    ).json()

    assert client.delete(f"/users/{user['id']}").json() == {"id": user["id"], "deleted": True}

    assert client.get(f"/users/{user['id']}").status_code == 404
    assert client.get(f"/wishlists/{wishlist['id']}").status_code == 404
    for model in (Address, Cart, Wishlist, UserPreferences):
        assert db.scalar(select(func.count()).select_from(model)) == 0, model.__name__

    kept = client.get(f"/orders/{order['id']}").json()
    assert kept["user_id"] is None
    assert kept["shipping_address_id"] is None
    assert kept["shipping_address_snapshot"]["street"] == "1 Main St"
    assert kept["total"] == order["total"]

    reviews = client.get(f"/products/{product['id']}/reviews").json()
    assert [r["id"] for r in reviews] == [review["id"]]
    assert reviews[0]["user_id"] is None


def test_reviews_update_product_rating(client, make_user, product):
    ada = make_user()
    grace = make_user(email="grace@storefront.io", name="Grace")
    url = f"/products/{product['id']}/reviews"

    assert client.post(url, json={"user_id": ada["id"], "rating": 6}).status_code == 422
    assert client.post(url, json={"user_id": ada["id"], "rating": 0}).status_code == 422

    first = client.post(
        url, json={"user_id": ada["id"], "rating": 4, "images": ["https://cdn.storefront.io/r1.jpg"]}
    ).json()
    assert first["images"][0]["url"] == "https://cdn.storefront.io/r1.jpg"
    client.post(url, json={"user_id": grace["id"], "rating": 5})
    assert client.get(f"/products/{product['id']}").json()["rating"] == 4.5

    edited = client.patch(f"/reviews/{first['id']}", json={"rating": 2, "comment": "Shrank"}).json()
    assert edited["comment"] == "Shrank"
    assert client.get(f"/products/{product['id']}").json()["rating"] == 3.5

    client.delete(f"/reviews/{first['id']}")
    assert client.get(f"/products/{product['id']}").json()["rating"] == 5.0
    assert len(client.get(url).json()) == 1


def test_review_by_unknown_user_is_rejected(client, product):
    response = client.post(
        f"/products/{product['id']}/reviews",
        json={"user_id": "00000000-0000-0000-0000-000000000000", "rating": 3},
    )
    assert response.status_code == 422


def test_wishlist_lifecycle(client, make_user, product, make_product):
    user = make_user()
    other = make_product(name="Hoodie", price=4500)
    wishlist = client.post(f"/users/{user['id']}/wishlists", json={"name": "Birthday"}).json()
    assert wishlist["is_public"] is False

    url = f"/wishlists/{wishlist['id']}/items"
    assert len(client.post(url, json={"product_id": product["id"]}).json()["items"]) == 1
    duplicate = client.post(url, json={"product_id": product["id"]})
    assert duplicate.status_code == 409
    assert len(client.post(url, json={"product_id": other["id"]}).json()["items"]) == 2

    renamed = client.patch(f"/wishlists/{wishlist['id']}", json={"name": "Gifts", "is_public": True}).json()
    assert renamed["name"] == "Gifts" and renamed["is_public"] is True

    remaining = client.delete(f"{url}/{product['id']}").json()
    assert [i["product_id"] for i in remaining["items"]] == [other["id"]]
    assert client.delete(f"{url}/{product['id']}").status_code == 404

    assert len(client.get(f"/users/{user['id']}/wishlists").json()) == 1
    client.delete(f"/wishlists/{wishlist['id']}")
    assert client.get(f"/users/{user['id']}/wishlists").json() == []
