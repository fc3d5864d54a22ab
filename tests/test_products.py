from conftest import auth_header, make_product

NEW_PRODUCT = {
    "name": "Fresh Milk",
    "description": "Full cream milk",
    "price": 1.5,
    "category": "dairy",
    "stock": 40,
    "unit": "l",
    "min_order_quantity": 2,
    "max_order_quantity": 1,
    "farm_location": "Anand",
}


def test_create_product_as_admin(client, admin):
    response = client.post("/api/products", json=NEW_PRODUCT, headers=auth_header(admin))
    assert response.status_code == 201
    body = response.json()
    assert body["seller"] == str(admin["_id"])
    assert body["rating"] == 0
    # max below min is raised to the minimum
    assert body["max_order_quantity"] == 2


def test_create_product_requires_admin(client, user):
    response = client.post("/api/products", json=NEW_PRODUCT, headers=auth_header(user))
    assert response.status_code == 403


def test_create_product_rejects_unknown_category(client, admin):
    response = client.post("/api/products", json={**NEW_PRODUCT, "category": "toys"}, headers=auth_header(admin))
    assert response.status_code == 400


def test_create_product_rejects_negative_price(client, admin):
    response = client.post("/api/products", json={**NEW_PRODUCT, "price": -1}, headers=auth_header(admin))
    assert response.status_code == 400


def test_list_products_filters_and_sorts(client, admin):
    make_product(admin, name="Carrots", price=2.0)
    make_product(admin, name="Apples", price=6.0, category="fruits", description="Crisp apples")
    make_product(admin, name="Potatoes", price=1.0)

    response = client.get("/api/products", params={"category": "vegetables", "sort": "price_asc"})
    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 2
    assert [p["name"] for p in body["items"]] == ["Potatoes", "Carrots"]

    response = client.get("/api/products", params={"min_price": 1.5, "max_price": 6})
    assert {p["name"] for p in response.json()["items"]} == {"Carrots", "Apples"}

    response = client.get("/api/products", params={"search": "crisp"})
    assert [p["name"] for p in response.json()["items"]] == ["Apples"]


def test_list_products_paginates(client, admin):
    for i in range(5):
        make_product(admin, name=f"Item {i}")
    response = client.get("/api/products", params={"page": 2, "page_size": 2})
    body = response.json()
    assert body["total"] == 5
    assert len(body["items"]) == 2


def test_list_all_products(client, product):
    response = client.get("/api/products/all")
    assert response.status_code == 200
    assert len(response.json()) == 1


def test_get_product(client, product):
    response = client.get(f"/api/products/{product['_id']}")
    assert response.status_code == 200
    assert response.json()["id"] == str(product["_id"])


def test_get_product_not_found(client):
    assert client.get("/api/products/64b7f0000000000000000000").status_code == 404


def test_get_product_invalid_id(client):
    assert client.get("/api/products/not-an-id").status_code == 400


def test_update_product(client, admin, product):
    response = client.patch(f"/api/products/{product['_id']}", json={"price": 5.25},
                            headers=auth_header(admin))
    assert response.status_code == 200
    assert response.json()["price"] == 5.25


def test_update_product_empty_body(client, admin, product):
    response = client.patch(f"/api/products/{product['_id']}", json={}, headers=auth_header(admin))
    assert response.status_code == 400


def test_update_product_keeps_order_bounds(client, admin, product):
    response = client.patch(f"/api/products/{product['_id']}", json={"min_order_quantity": 15},
                            headers=auth_header(admin))
    assert response.status_code == 200
    assert response.json()["max_order_quantity"] == 15


def test_stock_added_and_sold_with_history(client, admin, product):
    url = f"/api/products/{product['_id']}/stock"
    response = client.patch(url, json={"quantity": 10, "type": "added", "reason": "harvest"},
                            headers=auth_header(admin))
    assert response.status_code == 200
    assert response.json()["stock"] == 60

    response = client.patch(url, json={"quantity": 5, "type": "sold"}, headers=auth_header(admin))
    body = response.json()
    assert body["stock"] == 55
    assert [h["type"] for h in body["quantity_history"]] == ["added", "sold"]
    assert body["quantity_history"][0]["reason"] == "harvest"


def test_stock_cannot_go_negative(client, admin, product):
    response = client.patch(f"/api/products/{product['_id']}/stock", json={"quantity": 51, "type": "removed"},
                            headers=auth_header(admin))
    assert response.status_code == 400
    assert response.json()["detail"] == "Insufficient stock"


def test_stock_rejects_unknown_type(client, admin, product):
    response = client.patch(f"/api/products/{product['_id']}/stock", json={"quantity": 1, "type": "lost"},
                            headers=auth_header(admin))
    assert response.status_code == 400


def test_check_availability(client, product):
    url = f"/api/products/{product['_id']}/check-availability"
    assert client.post(url, json={"quantity": 5}).json()["available"] is True
    # above max_order_quantity
    assert client.post(url, json={"quantity": 11}).json()["available"] is False


def test_delete_product(client, admin, product):
    response = client.delete(f"/api/products/{product['_id']}", headers=auth_header(admin))
    assert response.status_code == 200
    assert client.get(f"/api/products/{product['_id']}").status_code == 404


def test_delete_missing_product(client, admin):
    response = client.delete("/api/products/64b7f0000000000000000000", headers=auth_header(admin))
    assert response.status_code == 404


def test_reviews_update_average_rating(client, user, other_user, product):
    url = f"/api/products/{product['_id']}/reviews"
    response = client.post(url, json={"rating": 5, "comment": "Great"}, headers=auth_header(user))
    assert response.status_code == 201
    assert response.json()["rating"] == 5

    response = client.post(url, json={"rating": 2}, headers=auth_header(other_user))
    body = response.json()
    assert body["rating"] == 3.5
    assert len(body["reviews"]) == 2
    assert body["reviews"][0]["user"] == str(user["_id"])


def test_review_rating_out_of_range(client, user, product):
    response = client.post(f"/api/products/{product['_id']}/reviews", json={"rating": 6},
                           headers=auth_header(user))
    assert response.status_code == 400


def test_seed_products(client, admin):
    response = client.post("/api/admin/seed", headers=auth_header(admin))
    assert response.json()["seeded"] is True
    again = client.post("/api/admin/seed", headers=auth_header(admin))
    assert again.json()["seeded"] is False
