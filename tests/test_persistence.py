"""
Store behaviour shared by InMemoryStore and PostgresStore.

The Postgres variant runs only when DATABASE_URL points at a disposable
database; its tables are truncated around every test.
"""

import os
from datetime import date, datetime, timedelta, timezone

import pytest

from app.persistence import (
    DuplicateEmailError,
    InMemoryStore,
    InsufficientStarsError,
    NotFoundError,
)

TABLES = "redemptions, sessions, settings, rewards, products, users"


def _postgres_store():
    from app.database import close_pool, get_pool, init_schema
    from app.persistence import PostgresStore

    init_schema()
    pool = get_pool()
    with pool.connection() as conn:
        conn.execute(f"TRUNCATE {TABLES} CASCADE")
    yield PostgresStore(pool)
    with pool.connection() as conn:
        conn.execute(f"TRUNCATE {TABLES} CASCADE")
    close_pool()


@pytest.fixture(params=["memory", "postgres"])
def backend(request):
    if request.param == "memory":
        yield InMemoryStore()
        return
    if not os.getenv("DATABASE_URL"):
        pytest.skip("DATABASE_URL not set")
    yield from _postgres_store()


def _user(backend, email="ana@starcart.test", points=200, **profile):
    return backend.create_user(email, "hash", profile=profile, points=points)


def test_create_and_find_user(backend):
    user = _user(backend, first_name="Ana", last_name="Lopez", birthday=date(1990, 5, 17))

    assert backend.get_user(user.id).display_name == "Ana Lopez"
    assert backend.get_credentials("ANA@starcart.test")[0].id == user.id
    found, password_hash = backend.get_credentials("ana@starcart.test")
    assert found.birthday == date(1990, 5, 17)
    assert password_hash == "hash"
    assert backend.get_credentials("nobody@starcart.test") is None


def test_email_is_unique_ignoring_case(backend):
    _user(backend)
    with pytest.raises(DuplicateEmailError):
        _user(backend, email="Ana@StarCart.test")


def test_list_users_hides_admins_by_default(backend):
    member = _user(backend)
    admin = backend.create_user("admin@starcart.test", "hash", is_admin=True)

    assert [u.id for u in backend.list_users()] == [member.id]
    assert {u.id for u in backend.list_users(include_admins=True)} == {member.id, admin.id}


def test_update_user_ignores_non_profile_fields(backend):
    user = _user(backend)

    updated = backend.update_user(user.id, {"city": "Quito", "points": 10_000, "is_admin": True})

    assert updated.city == "Quito"
    assert updated.points == 200
    assert updated.is_admin is False
    with pytest.raises(NotFoundError):
        backend.update_user("missing", {"city": "Quito"})


def test_add_points_accumulates(backend):
    user = _user(backend)

    assert backend.add_points(user.id, 100) == 300
    assert backend.add_points(user.id, 50) == 350
    assert backend.get_user(user.id).points == 350
    with pytest.raises(NotFoundError):
        backend.add_points("missing", 10)


def test_sessions(backend):
    user = _user(backend)
    expires = datetime.now(timezone.utc) + timedelta(hours=1)

    backend.create_session(user.id, "tok", expires)

    user_id, expires_at = backend.get_session("tok")
    assert user_id == user.id
    assert abs((expires_at - expires).total_seconds()) < 1
    assert backend.delete_session("tok") is True
    assert backend.get_session("tok") is None
    assert backend.delete_session("tok") is False


def test_catalog(backend):
    product = backend.add_product("ANSIOLIFE", 50, image="/media/products/a.png")
    backend.add_reward("Big", "Blender", 900)
    mug = backend.add_reward("Small", "Mug", 150, hint="kitchen")

    assert backend.get_product(product.id).stars == 50
    assert [r.name for r in backend.list_rewards()] == ["Mug", "Blender"]
    assert backend.get_reward(mug.id).hint == "kitchen"

    assert backend.delete_product(product.id) is True
    assert backend.get_product(product.id) is None
    assert backend.delete_reward("missing") is False


def test_redeem_deducts_and_records(backend):
    user = _user(backend, first_name="Ana")
    reward = backend.add_reward("Small", "Mug", 150)

    updated, redemption = backend.redeem(user.id, reward, {"address": "Av. Amazonas 123", "points": 9})

    assert updated.points == 50
    assert updated.address == "Av. Amazonas 123"
    assert redemption.user_name == "Ana"
    assert redemption.points_redeemed == 150
    assert [r.id for r in backend.list_redemptions()] == [redemption.id]


def test_redeem_without_enough_stars(backend):
    user = _user(backend, points=100)
    reward = backend.add_reward("Small", "Mug", 150)

    with pytest.raises(InsufficientStarsError):
        backend.redeem(user.id, reward, {"city": "Quito"})

    unchanged = backend.get_user(user.id)
    assert unchanged.points == 100
    assert unchanged.city is None
    assert backend.list_redemptions() == []


def test_redeem_unknown_user(backend):
    reward = backend.add_reward("Small", "Mug", 150)
    with pytest.raises(NotFoundError):
        backend.redeem("missing", reward)


def test_webhook_setting(backend):
    assert backend.get_webhook_url() is None
    backend.save_webhook_url("https://hooks.example.com/a")
    backend.save_webhook_url("https://hooks.example.com/b")
    assert backend.get_webhook_url() == "https://hooks.example.com/b"
    backend.delete_webhook_url()
    assert backend.get_webhook_url() is None
