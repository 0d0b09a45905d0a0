from bson import ObjectId

from conftest import make_product
from errors import StoreTimeoutError
from inventory import InventoryLedger

PRODUCT = {
    "name": "Cold Brew",
    "description": "Steeped for twelve hours",
    "price": 5.0,
    "category": "coffee",
    "images": ["/coldbrew-1.jpg"],
    "main_image": "/coldbrew.jpg",
    "discount": 20,
}


def create(client, headers, **overrides):
    res = client.post("/products", json={**PRODUCT, **overrides}, headers=headers)
    assert res.status_code == 201, res.text
    return res.json()


def test_root_and_diagnostics(client):
    assert client.get("/").json() == {"message": "Coffee Shop API is running"}
    body = client.get("/test").json()
    assert body["backend"] == "✅ Running"
    assert body["connection_status"] == "Connected"


def test_create_product_books_initial_stock(client, db, admin_headers):
    product = create(client, admin_headers, quantity=12)

    assert product["quantity"] == 12
    assert product["in_stock"] is True
    assert product["actual_price"] == 4.0

    records = list(db["inventoryrecord"].find({"product": product["id"]}))
    assert len(records) == 1
    assert records[0]["operation_type"] == "adjust"
    assert records[0]["note"] == "Initial stock"

    verify = client.get(f"/inventory/product/{product['id']}/verify", headers=admin_headers)
    assert verify.json()["replayed_quantity"] == 12


def test_failed_initial_stock_removes_new_product(client, db, admin_headers, monkeypatch):
    def slow(self, *args, **kwargs):
        raise StoreTimeoutError("Inventory store timed out")

    monkeypatch.setattr(InventoryLedger, "adjust_stock", slow)
    res = client.post("/products", json={**PRODUCT, "quantity": 4}, headers=admin_headers)

    assert res.status_code == 503
    assert db["product"].find_one({"name": PRODUCT["name"]}) is None


def test_create_product_requires_admin(client, customer_headers):
    assert client.post("/products", json=PRODUCT).status_code == 401
    assert client.post("/products", json=PRODUCT, headers=customer_headers).status_code == 403


def test_create_product_rejects_unknown_category_and_duplicates(client, admin_headers):
    bad = client.post("/products", json={**PRODUCT, "category": "juice"}, headers=admin_headers)
    assert bad.status_code == 422
    create(client, admin_headers)
    dup = client.post("/products", json=PRODUCT, headers=admin_headers)
    assert dup.status_code == 400


def test_update_cannot_touch_stock(client, admin_headers):
    product = create(client, admin_headers, quantity=3)

    res = client.patch(f"/products/{product['id']}", json={"quantity": 99}, headers=admin_headers)
    assert res.status_code == 422

    res = client.patch(f"/products/{product['id']}", json={"price": 6.0, "discount": None}, headers=admin_headers)
    assert res.status_code == 200
    assert res.json()["actual_price"] == 6.0
    assert res.json()["quantity"] == 3


def test_list_and_filter_products(client, db):
    make_product(db, name="Espresso", price=3.0, quantity=4, featured=True)
    make_product(db, name="Green Tea", category="tea", price=4.0)
    make_product(db, name="Brownie", category="dessert", price=6.5, quantity=1)

    body = client.get("/products").json()
    assert body["total"] == 3

    tea = client.get("/products", params={"category": "tea"}).json()
    assert [p["name"] for p in tea["products"]] == ["Green Tea"]

    in_stock = client.get("/products", params={"in_stock": True, "sort": "-price"}).json()
    assert [p["name"] for p in in_stock["products"]] == ["Brownie", "Espresso"]

    cheap = client.get("/products", params={"max_price": 4.0, "sort": "price"}).json()
    assert [p["name"] for p in cheap["products"]] == ["Espresso", "Green Tea"]

    found = client.get("/products", params={"search": "brown"}).json()
    assert found["results"] == 1

    paged = client.get("/products", params={"sort": "name", "limit": 2, "page": 2}).json()
    assert [p["name"] for p in paged["products"]] == ["Green Tea"]
    assert paged["total_pages"] == 2


def test_products_by_category(client, db):
    make_product(db, name="Mug", category="merchandise")
    assert len(client.get("/products/category/merchandise").json()) == 1
    assert client.get("/products/category/juice").status_code == 400


def test_get_and_delete_product(client, db, admin_headers):
    pid = make_product(db, quantity=2)
    assert client.get(f"/products/{pid}").json()["name"] == "Espresso"
    assert client.get("/products/nope").status_code == 404

    assert client.delete(f"/products/{pid}", headers=admin_headers).json() == {"status": "removed"}
    assert client.get(f"/products/{pid}").status_code == 404
    assert client.delete(f"/products/{pid}", headers=admin_headers).status_code == 404


def test_reviews_recalculate_rating(client, db, customer_headers):
    pid = make_product(db)
    for rating in (5, 4, 4):
        res = client.post(f"/products/{pid}/reviews", json={"rating": rating, "comment": "Nice"},
                          headers=customer_headers)
        assert res.status_code == 201

    product = res.json()
    assert product["ratings_count"] == 3
    assert product["average_rating"] == 4.3
    assert len(product["reviews"]) == 3

    bad = client.post(f"/products/{pid}/reviews", json={"rating": 6, "comment": "!"}, headers=customer_headers)
    assert bad.status_code == 422
    blank = client.post(f"/products/{pid}/reviews", json={"rating": 3, "comment": "   "}, headers=customer_headers)
    assert blank.status_code == 400
    missing = client.post(f"/products/{ObjectId()}/reviews", json={"rating": 3, "comment": "ok"},
                          headers=customer_headers)
    assert missing.status_code == 404


def test_inventory_operations_over_http(client, db, admin, admin_headers):
    pid = make_product(db)

    res = client.post(f"/inventory/product/{pid}/add", json={"quantity": 8, "note": "delivery"}, headers=admin_headers)
    assert res.status_code == 201
    assert res.json()["record"]["current_stock"] == 8

    res = client.post(f"/inventory/product/{pid}/remove", json={"quantity": 10}, headers=admin_headers)
    assert res.status_code == 400
    assert "Insufficient stock" in res.json()["detail"]

    res = client.post(f"/inventory/product/{pid}/remove", json={"quantity": 0}, headers=admin_headers)
    assert res.status_code == 400

    res = client.post(f"/inventory/product/{pid}/adjust", json={"new_stock": 2}, headers=admin_headers)
    assert res.json()["record"]["previous_stock"] == 8

    res = client.post(f"/inventory/product/{ObjectId()}/add", json={"quantity": 1}, headers=admin_headers)
    assert res.status_code == 404

    history = client.get(f"/inventory/product/{pid}", headers=admin_headers).json()
    assert history["results"] == 2
    assert history["records"][0]["operation_type"] == "adjust"
    assert history["records"][0]["operator"]["name"] == "Ada"

    record_id = history["records"][1]["id"]
    single = client.get(f"/inventory/{record_id}", headers=admin_headers).json()
    assert single["note"] == "delivery"
    assert client.get("/inventory/bogus", headers=admin_headers).status_code == 404

    listed = client.get("/inventory", params={"operation_type": "add"}, headers=admin_headers).json()
    assert listed["results"] == 1

    assert client.get(f"/products/{pid}").json()["quantity"] == 2


def test_inventory_is_admin_only(client, db, customer_headers):
    pid = make_product(db)
    assert client.get("/inventory", headers=customer_headers).status_code == 403
    res = client.post(f"/inventory/product/{pid}/add", json={"quantity": 1}, headers=customer_headers)
    assert res.status_code == 403


def test_verify_reports_out_of_band_change(client, db, admin_headers):
    pid = make_product(db)
    client.post(f"/inventory/product/{pid}/add", json={"quantity": 3}, headers=admin_headers)
    db["product"].update_one({"_id": ObjectId(pid)}, {"$set": {"quantity": 7}})

    res = client.get(f"/inventory/product/{pid}/verify", headers=admin_headers)
    assert res.status_code == 409


def test_register_login_and_me(client):
    res = client.post("/auth/register", json={"name": "Bea", "email": "Bea@Example.com", "password": "flatwhite"})
    assert res.status_code == 200
    assert res.json()["role"] == "customer"

    again = client.post("/auth/register", json={"name": "Bea", "email": "bea@example.com", "password": "flatwhite"})
    assert again.status_code == 400

    bad = client.post("/auth/login", data={"username": "bea@example.com", "password": "wrong-pass"})
    assert bad.status_code == 400

    token = client.post("/auth/login", data={"username": "bea@example.com", "password": "flatwhite"}).json()
    me = client.get("/auth/me", headers={"Authorization": f"Bearer {token['access_token']}"})
    assert me.json()["email"] == "bea@example.com"


def test_image_endpoints(client):
    res = client.get("/images/resolve", params={"path": "latte.jpg", "hostname": "myuser.github.io",
                                                "pathname": "/my-repo/menu/"})
    assert res.json() == {"url": "/my-repo/images/latte.jpg"}
    assert client.get("/images/resolve", params={"path": "/mocha.jpg"}).json() == {"url": "/images/mocha.jpg"}

    env = client.get("/images/environment", params={"hostname": "localhost"}).json()
    assert env["is_localhost"] is True
    assert env["is_server"] is False
