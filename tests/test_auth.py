from datetime import datetime, timedelta

import jwt

import security
from conftest import auth_header


def test_root(client):
    response = client.get("/")
    assert response.status_code == 200
    assert "message" in response.json()


def test_database_report(client):
    response = client.get("/test")
    assert response.status_code == 200
    assert response.json()["connection_status"] == "Connected"


def test_register_returns_token_and_user(client):
    response = client.post("/api/auth/register", json={
        "name": "Meera", "email": "Meera@Example.com", "password": "secret123",
    })
    assert response.status_code == 201
    body = response.json()
    assert body["token"]
    assert body["user"]["email"] == "meera@example.com"
    assert body["user"]["role"] == "user"
    assert body["user"]["is_admin"] is False
    assert "hashed_password" not in body["user"]


def test_register_duplicate_email(client, user):
    response = client.post("/api/auth/register", json={
        "name": "Someone", "email": "asha@example.com", "password": "secret123",
    })
    assert response.status_code == 400


def test_register_validation_is_400(client):
    response = client.post("/api/auth/register", json={"name": "Meera", "email": "not-an-email", "password": "123"})
    assert response.status_code == 400
    fields = {err["loc"][-1] for err in response.json()["detail"]}
    assert {"email", "password"} <= fields


def test_login(client, user):
    response = client.post("/api/auth/login", json={"email": "asha@example.com", "password": "secret123"})
    assert response.status_code == 200
    assert response.json()["user"]["id"] == str(user["_id"])


def test_login_wrong_password(client, user):
    response = client.post("/api/auth/login", json={"email": "asha@example.com", "password": "nope-nope"})
    assert response.status_code == 401


def test_me_requires_token(client):
    assert client.get("/api/auth/me").status_code == 401


def test_me_with_token(client, user):
    response = client.get("/api/auth/me", headers=auth_header(user))
    assert response.status_code == 200
    assert response.json()["name"] == "Asha Patel"


def test_expired_token_rejected(client, user):
    token = jwt.encode(
        {"sub": str(user["_id"]), "exp": datetime.utcnow() - timedelta(minutes=1)},
        security.JWT_SECRET,
        algorithm=security.JWT_ALGORITHM,
    )
    response = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401
    assert response.json()["detail"] == "Token expired"


def test_admin_flag_mirrors_role(client, admin):
    response = client.get("/api/auth/me", headers=auth_header(admin))
    assert response.json()["is_admin"] is True


def test_bootstrap_admin_created_on_startup(mongo, monkeypatch):
    import main
    from fastapi.testclient import TestClient

    monkeypatch.setattr(main, "ADMIN_EMAIL", "Boss@FarmBros.com")
    monkeypatch.setattr(main, "ADMIN_PASSWORD", "supersecret")
    with TestClient(main.app):
        pass
    admin = mongo["user"].find_one({"email": "boss@farmbros.com"})
    assert admin["role"] == "admin"
    assert admin["is_admin"] is True


def test_database_report_counts_collections(client, user, product):
    body = client.get("/test").json()
    assert body["collections"]["user"] >= 1
    assert body["collections"]["product"] == 1
    assert "order" not in body["collections"]
