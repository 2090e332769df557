"""Sign-up, referral bonus, login and guards."""

from conftest import auth_headers, signup


def test_signup_grants_welcome_stars(client):
    data = signup(client, "new@starcart.test", first_name="Nia")

    assert data["token"]
    assert data["user"]["points"] == 200
    assert data["user"]["is_admin"] is False
    assert "password_hash" not in data["user"]


def test_signup_duplicate_email_conflicts(client):
    signup(client, "dup@starcart.test")
    resp = client.post("/auth/signup", json={"email": "DUP@starcart.test", "password": "secret123"})
    assert resp.status_code == 409


def test_signup_validates_payload(client):
    assert client.post("/auth/signup", json={"email": "bad", "password": "secret123"}).status_code == 422
    assert client.post("/auth/signup", json={"email": "a@b.co", "password": "123"}).status_code == 422


def test_referral_awards_referrer(client, store):
    referrer = signup(client, "ref@starcart.test")["user"]
    invited = signup(client, "invited@starcart.test", ref=referrer["id"])["user"]

    assert invited["referred_by"] == referrer["id"]
    assert invited["points"] == 200
    assert store.get_user(referrer["id"]).points == 300


def test_unknown_referral_is_ignored(client):
    user = signup(client, "solo@starcart.test", ref="nobody")["user"]
    assert user["referred_by"] is None
    assert user["points"] == 200


def test_admin_emails_become_admins(client):
    assert signup(client, "admin@starcart.test")["user"]["is_admin"] is True


def test_login_and_logout(client):
    signup(client, "log@starcart.test", password="hunter22")

    bad = client.post("/auth/login", json={"email": "log@starcart.test", "password": "wrong!!"})
    assert bad.status_code == 401

    missing = client.post("/auth/login", json={"email": "none@starcart.test", "password": "hunter22"})
    assert missing.status_code == 401

    ok = client.post("/auth/login", json={"email": "log@starcart.test", "password": "hunter22"})
    assert ok.status_code == 200
    token = ok.json()["token"]

    assert client.get("/users/me", headers=auth_headers(token)).status_code == 200
    assert client.post("/auth/logout", headers=auth_headers(token)).status_code == 204
    assert client.get("/users/me", headers=auth_headers(token)).status_code == 401


def test_requests_without_token_are_rejected(client):
    assert client.get("/users/me").status_code == 401
    assert client.get("/users/me", headers={"Authorization": "Basic abc"}).status_code == 401
    assert client.get("/users/me", headers=auth_headers("made-up")).status_code == 401


def test_expired_session_is_rejected(client, store, user_session):
    from datetime import datetime, timedelta, timezone

    _, user = user_session
    store.create_session(user["id"], "stale", datetime.now(timezone.utc) - timedelta(minutes=1))

    assert client.get("/users/me", headers=auth_headers("stale")).status_code == 401
    assert store.get_session("stale") is None


def test_admin_guard(client, user_session, admin_session):
    user_token, _ = user_session
    admin_token, _ = admin_session

    assert client.get("/users", headers=auth_headers(user_token)).status_code == 403
    resp = client.get("/users", headers=auth_headers(admin_token))
    assert resp.status_code == 200
    assert [u["email"] for u in resp.json()] == ["ana@starcart.test"]

    user_id = resp.json()[0]["id"]
    assert client.get(f"/users/{user_id}", headers=auth_headers(admin_token)).json()["email"] == "ana@starcart.test"
    assert client.get("/users/missing", headers=auth_headers(admin_token)).status_code == 404
    assert client.get(f"/users/{user_id}", headers=auth_headers(user_token)).status_code == 403


def test_info_and_security_headers(client):
    resp = client.get("/")
    assert resp.json()["mode"] == "in-memory"
    assert resp.headers["X-Content-Type-Options"] == "nosniff"
    assert resp.headers["X-Frame-Options"] == "DENY"


def test_profile_update_cannot_touch_points(client, user_session):
    token, _ = user_session
    resp = client.patch(
        "/users/me",
        headers=auth_headers(token),
        json={"city": "Quito", "points": 99999, "is_admin": True},
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["city"] == "Quito"
    assert body["points"] == 200
    assert body["is_admin"] is False
