"""
Business data persistence layer for StarCart Rewards.

Two stores implement the same interface:

- PostgresStore: normalized tables in PostgreSQL (see app.database.SCHEMA_SQL),
  accessed through a psycopg_pool ConnectionPool.
- InMemoryStore: process-local dicts guarded by a lock, for development and
  tests (enabled with USE_IN_MEMORY=1).

Balance changes are always a single atomic operation (increment, or
conditional deduction) so concurrent receipt submissions and redemptions
cannot lose updates.
"""

from __future__ import annotations

import logging
import os
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from psycopg.errors import IntegrityError, OperationalError, UniqueViolation
from psycopg.rows import dict_row

from app.database import ensure_db_ready, get_pool, init_schema
from app.graph.state import PROFILE_FIELDS, Product, Redemption, Reward, User

logger = logging.getLogger(__name__)

WEBHOOK_SETTING_KEY = "webhook_url"


class PersistenceError(Exception):
    """Raised when business data persistence fails."""
    pass


class NotFoundError(PersistenceError):
    """The referenced record does not exist."""


class DuplicateEmailError(PersistenceError):
    """A user with this email is already registered."""


class InsufficientStarsError(PersistenceError):
    """The user's balance does not cover the requested redemption."""


def _new_id() -> str:
    return str(uuid4())


def _profile_only(fields: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in fields.items() if k in PROFILE_FIELDS}


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------

class InMemoryStore:
    """Process-local store; contents vanish on restart."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._users: Dict[str, User] = {}
        self._password_hashes: Dict[str, str] = {}
        self._sessions: Dict[str, Tuple[str, datetime]] = {}
        self._products: Dict[str, Product] = {}
        self._rewards: Dict[str, Reward] = {}
        self._redemptions: List[Redemption] = []
        self._settings: Dict[str, str] = {}

    # ---- users ----

    def create_user(
        self,
        email: str,
        password_hash: str,
        profile: Optional[Dict[str, Any]] = None,
        points: int = 0,
        is_admin: bool = False,
        referred_by: Optional[str] = None,
    ) -> User:
        with self._lock:
            if self._find_by_email(email) is not None:
                raise DuplicateEmailError(f"Email '{email}' already exists")
            user = User(
                id=_new_id(),
                email=email,
                points=points,
                is_admin=is_admin,
                referred_by=referred_by,
                **_profile_only(profile or {}),
            )
            self._users[user.id] = user
            self._password_hashes[user.id] = password_hash
            logger.info(f"✅ Created user {user.id} ({email})")
            return user.model_copy()

    def _find_by_email(self, email: str) -> Optional[User]:
        needle = email.strip().lower()
        for user in self._users.values():
            if user.email.lower() == needle:
                return user
        return None

    def get_credentials(self, email: str) -> Optional[Tuple[User, str]]:
        with self._lock:
            user = self._find_by_email(email)
            if user is None:
                return None
            return user.model_copy(), self._password_hashes[user.id]

    def get_user(self, user_id: str) -> Optional[User]:
        with self._lock:
            user = self._users.get(user_id)
            return user.model_copy() if user else None

    def list_users(self, include_admins: bool = False) -> List[User]:
        with self._lock:
            users = [u.model_copy() for u in self._users.values()]
        if not include_admins:
            users = [u for u in users if not u.is_admin]
        return sorted(users, key=lambda u: u.created_at)

    def update_user(self, user_id: str, fields: Dict[str, Any]) -> User:
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                raise NotFoundError(f"User {user_id} not found")
            updated = user.model_copy(update=_profile_only(fields))
            self._users[user_id] = updated
            return updated.model_copy()

    def add_points(self, user_id: str, delta: int) -> int:
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                raise NotFoundError(f"User {user_id} not found")
            new_points = user.points + delta
            if new_points < 0:
                raise InsufficientStarsError(
                    f"User {user_id} has {user.points} stars, cannot apply {delta}"
                )
            self._users[user_id] = user.model_copy(update={"points": new_points})
            logger.info(f"✅ Points for {user_id}: {user.points} -> {new_points}")
            return new_points

    # ---- sessions ----

    def create_session(self, user_id: str, token: str, expires_at: datetime) -> None:
        with self._lock:
            self._sessions[token] = (user_id, expires_at)

    def get_session(self, token: str) -> Optional[Tuple[str, datetime]]:
        with self._lock:
            return self._sessions.get(token)

    def delete_session(self, token: str) -> bool:
        with self._lock:
            return self._sessions.pop(token, None) is not None

    # ---- products ----

    def list_products(self) -> List[Product]:
        with self._lock:
            return sorted(self._products.values(), key=lambda p: p.created_at)

    def get_product(self, product_id: str) -> Optional[Product]:
        with self._lock:
            return self._products.get(product_id)

    def add_product(self, name: str, stars: int, image: Optional[str] = None) -> Product:
        product = Product(id=_new_id(), name=name, stars=stars, image=image)
        with self._lock:
            self._products[product.id] = product
        logger.info(f"✅ Added product {product.id} ({name}, {stars} stars)")
        return product

    def delete_product(self, product_id: str) -> bool:
        with self._lock:
            return self._products.pop(product_id, None) is not None

    # ---- rewards ----

    def list_rewards(self) -> List[Reward]:
        with self._lock:
            return sorted(self._rewards.values(), key=lambda r: (r.points, r.created_at))

    def get_reward(self, reward_id: str) -> Optional[Reward]:
        with self._lock:
            return self._rewards.get(reward_id)

    def add_reward(
        self,
        title: str,
        name: str,
        points: int,
        image: Optional[str] = None,
        hint: Optional[str] = None,
    ) -> Reward:
        reward = Reward(id=_new_id(), title=title, name=name, points=points, image=image, hint=hint)
        with self._lock:
            self._rewards[reward.id] = reward
        logger.info(f"✅ Added reward {reward.id} ({name}, {points} stars)")
        return reward

    def delete_reward(self, reward_id: str) -> bool:
        with self._lock:
            return self._rewards.pop(reward_id, None) is not None

    # ---- redemptions ----

    def redeem(
        self,
        user_id: str,
        reward: Reward,
        profile_updates: Optional[Dict[str, Any]] = None,
    ) -> Tuple[User, Redemption]:
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                raise NotFoundError(f"User {user_id} not found")
            if user.points < reward.points:
                raise InsufficientStarsError(
                    f"User {user_id} has {user.points} stars, reward costs {reward.points}"
                )
            update = _profile_only(profile_updates or {})
            update["points"] = user.points - reward.points
            updated = user.model_copy(update=update)
            self._users[user_id] = updated
            redemption = Redemption(
                id=_new_id(),
                user_id=user_id,
                user_name=updated.display_name,
                reward_id=reward.id,
                reward_name=reward.name,
                points_redeemed=reward.points,
            )
            self._redemptions.append(redemption)
        logger.info(f"✅ {user_id} redeemed {reward.name} for {reward.points} stars")
        return updated.model_copy(), redemption

    def list_redemptions(self) -> List[Redemption]:
        with self._lock:
            return sorted(self._redemptions, key=lambda r: r.timestamp, reverse=True)

    # ---- settings ----

    def get_webhook_url(self) -> Optional[str]:
        with self._lock:
            return self._settings.get(WEBHOOK_SETTING_KEY) or None

    def save_webhook_url(self, url: str) -> None:
        with self._lock:
            self._settings[WEBHOOK_SETTING_KEY] = url

    def delete_webhook_url(self) -> None:
        with self._lock:
            self._settings.pop(WEBHOOK_SETTING_KEY, None)


# ---------------------------------------------------------------------------
# PostgreSQL store
# ---------------------------------------------------------------------------

_USER_COLUMNS = ", ".join(
    ("id", "email", "points", "is_admin", "referred_by", "created_at") + PROFILE_FIELDS
)


class PostgresStore:
    """Store backed by the tables in app.database.SCHEMA_SQL."""

    def __init__(self, pool=None) -> None:
        self._pool = pool or get_pool()

    def _fetch_one(self, sql: str, params: tuple = ()) -> Optional[Dict[str, Any]]:
        try:
            with self._pool.connection() as conn:
                with conn.cursor(row_factory=dict_row) as cur:
                    cur.execute(sql, params)
                    return cur.fetchone()
        except (OperationalError, IntegrityError) as e:
            logger.error(f"❌ Database error: {e}")
            raise PersistenceError(f"Database query failed: {e}")

    def _fetch_all(self, sql: str, params: tuple = ()) -> List[Dict[str, Any]]:
        try:
            with self._pool.connection() as conn:
                with conn.cursor(row_factory=dict_row) as cur:
                    cur.execute(sql, params)
                    return cur.fetchall()
        except OperationalError as e:
            logger.error(f"❌ Database error: {e}")
            raise PersistenceError(f"Database query failed: {e}")

    def _execute(self, sql: str, params: tuple = ()) -> int:
        try:
            with self._pool.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(sql, params)
                    return cur.rowcount
        except (OperationalError, IntegrityError) as e:
            logger.error(f"❌ Database error: {e}")
            raise PersistenceError(f"Database statement failed: {e}")

    # ---- users ----

    def create_user(
        self,
        email: str,
        password_hash: str,
        profile: Optional[Dict[str, Any]] = None,
        points: int = 0,
        is_admin: bool = False,
        referred_by: Optional[str] = None,
    ) -> User:
        fields = _profile_only(profile or {})
        fields.update(
            id=_new_id(),
            email=email,
            password_hash=password_hash,
            points=points,
            is_admin=is_admin,
            referred_by=referred_by,
        )
        columns = ", ".join(fields)
        placeholders = ", ".join(["%s"] * len(fields))
        try:
            with self._pool.connection() as conn:
                with conn.cursor(row_factory=dict_row) as cur:
                    cur.execute(
                        f"INSERT INTO users ({columns}) VALUES ({placeholders}) "
                        f"RETURNING {_USER_COLUMNS}",
                        tuple(fields.values()),
                    )
                    row = cur.fetchone()
        except UniqueViolation:
            raise DuplicateEmailError(f"Email '{email}' already exists")
        except (OperationalError, IntegrityError) as e:
            logger.error(f"❌ Database error creating user {email}: {e}")
            raise PersistenceError(f"Failed to create user: {e}")
        logger.info(f"✅ Created user {row['id']} ({email})")
        return User.model_validate(row)

    def get_credentials(self, email: str) -> Optional[Tuple[User, str]]:
        row = self._fetch_one(
            f"SELECT {_USER_COLUMNS}, password_hash FROM users WHERE lower(email) = lower(%s)",
            (email.strip(),),
        )
        if not row:
            return None
        password_hash = row.pop("password_hash")
        return User.model_validate(row), password_hash

    def get_user(self, user_id: str) -> Optional[User]:
        row = self._fetch_one(f"SELECT {_USER_COLUMNS} FROM users WHERE id = %s", (user_id,))
        return User.model_validate(row) if row else None

    def list_users(self, include_admins: bool = False) -> List[User]:
        sql = f"SELECT {_USER_COLUMNS} FROM users"
        if not include_admins:
            sql += " WHERE NOT is_admin"
        sql += " ORDER BY created_at"
        return [User.model_validate(row) for row in self._fetch_all(sql)]

    def update_user(self, user_id: str, fields: Dict[str, Any]) -> User:
        update = _profile_only(fields)
        if not update:
            user = self.get_user(user_id)
            if user is None:
                raise NotFoundError(f"User {user_id} not found")
            return user
        assignments = ", ".join(f"{column} = %s" for column in update)
        row = self._fetch_one(
            f"UPDATE users SET {assignments} WHERE id = %s RETURNING {_USER_COLUMNS}",
            tuple(update.values()) + (user_id,),
        )
        if not row:
            raise NotFoundError(f"User {user_id} not found")
        return User.model_validate(row)

    def add_points(self, user_id: str, delta: int) -> int:
        row = self._fetch_one(
            "UPDATE users SET points = points + %s WHERE id = %s RETURNING points",
            (delta, user_id),
        )
        if not row:
            raise NotFoundError(f"User {user_id} not found")
        logger.info(f"✅ Points for {user_id} changed by {delta} -> {row['points']}")
        return row["points"]

    # ---- sessions ----

    def create_session(self, user_id: str, token: str, expires_at: datetime) -> None:
        self._execute(
            "INSERT INTO sessions (token, user_id, expires_at) VALUES (%s, %s, %s)",
            (token, user_id, expires_at),
        )

    def get_session(self, token: str) -> Optional[Tuple[str, datetime]]:
        row = self._fetch_one("SELECT user_id, expires_at FROM sessions WHERE token = %s", (token,))
        return (row["user_id"], row["expires_at"]) if row else None

    def delete_session(self, token: str) -> bool:
        return self._execute("DELETE FROM sessions WHERE token = %s", (token,)) > 0

    # ---- products ----

    def list_products(self) -> List[Product]:
        rows = self._fetch_all("SELECT id, name, stars, image, created_at FROM products ORDER BY created_at")
        return [Product.model_validate(row) for row in rows]

    def get_product(self, product_id: str) -> Optional[Product]:
        row = self._fetch_one(
            "SELECT id, name, stars, image, created_at FROM products WHERE id = %s", (product_id,)
        )
        return Product.model_validate(row) if row else None

    def add_product(self, name: str, stars: int, image: Optional[str] = None) -> Product:
        product = Product(id=_new_id(), name=name, stars=stars, image=image)
        self._execute(
            "INSERT INTO products (id, name, stars, image, created_at) VALUES (%s, %s, %s, %s, %s)",
            (product.id, product.name, product.stars, product.image, product.created_at),
        )
        logger.info(f"✅ Added product {product.id} ({name}, {stars} stars)")
        return product

    def delete_product(self, product_id: str) -> bool:
        return self._execute("DELETE FROM products WHERE id = %s", (product_id,)) > 0

    # ---- rewards ----

    def list_rewards(self) -> List[Reward]:
        rows = self._fetch_all(
            "SELECT id, title, name, points, image, hint, created_at FROM rewards "
            "ORDER BY points, created_at"
        )
        return [Reward.model_validate(row) for row in rows]

    def get_reward(self, reward_id: str) -> Optional[Reward]:
        row = self._fetch_one(
            "SELECT id, title, name, points, image, hint, created_at FROM rewards WHERE id = %s",
            (reward_id,),
        )
        return Reward.model_validate(row) if row else None

    def add_reward(
        self,
        title: str,
        name: str,
        points: int,
        image: Optional[str] = None,
        hint: Optional[str] = None,
    ) -> Reward:
        reward = Reward(id=_new_id(), title=title, name=name, points=points, image=image, hint=hint)
        self._execute(
            "INSERT INTO rewards (id, title, name, points, image, hint, created_at) "
            "VALUES (%s, %s, %s, %s, %s, %s, %s)",
            (reward.id, reward.title, reward.name, reward.points, reward.image, reward.hint,
             reward.created_at),
        )
        logger.info(f"✅ Added reward {reward.id} ({name}, {points} stars)")
        return reward

    def delete_reward(self, reward_id: str) -> bool:
        return self._execute("DELETE FROM rewards WHERE id = %s", (reward_id,)) > 0

    # ---- redemptions ----

    def redeem(
        self,
        user_id: str,
        reward: Reward,
        profile_updates: Optional[Dict[str, Any]] = None,
    ) -> Tuple[User, Redemption]:
        update = _profile_only(profile_updates or {})
        assignments = "".join(f", {column} = %s" for column in update)
        try:
            with self._pool.connection() as conn:
                with conn.cursor(row_factory=dict_row) as cur:
                    # Conditional deduction: no row when the balance is too low
                    cur.execute(
                        f"UPDATE users SET points = points - %s{assignments} "
                        f"WHERE id = %s AND points >= %s RETURNING {_USER_COLUMNS}",
                        (reward.points,) + tuple(update.values()) + (user_id, reward.points),
                    )
                    row = cur.fetchone()
                    if row is None:
                        cur.execute("SELECT points FROM users WHERE id = %s", (user_id,))
                        existing = cur.fetchone()
                        if existing is None:
                            raise NotFoundError(f"User {user_id} not found")
                        raise InsufficientStarsError(
                            f"User {user_id} has {existing['points']} stars, "
                            f"reward costs {reward.points}"
                        )
                    user = User.model_validate(row)
                    redemption = Redemption(
                        id=_new_id(),
                        user_id=user_id,
                        user_name=user.display_name,
                        reward_id=reward.id,
                        reward_name=reward.name,
                        points_redeemed=reward.points,
                    )
                    cur.execute(
                        "INSERT INTO redemptions (id, user_id, user_name, reward_id, reward_name, "
                        "points_redeemed, timestamp) VALUES (%s, %s, %s, %s, %s, %s, %s)",
                        (redemption.id, redemption.user_id, redemption.user_name,
                         redemption.reward_id, redemption.reward_name,
                         redemption.points_redeemed, redemption.timestamp),
                    )
        except (OperationalError, IntegrityError) as e:
            logger.error(f"❌ Database error redeeming {reward.id} for {user_id}: {e}")
            raise PersistenceError(f"Failed to record redemption: {e}")
        logger.info(f"✅ {user_id} redeemed {reward.name} for {reward.points} stars")
        return user, redemption

    def list_redemptions(self) -> List[Redemption]:
        rows = self._fetch_all(
            "SELECT id, user_id, user_name, reward_id, reward_name, points_redeemed, timestamp "
            "FROM redemptions ORDER BY timestamp DESC"
        )
        return [Redemption.model_validate(row) for row in rows]

    # ---- settings ----

    def get_webhook_url(self) -> Optional[str]:
        row = self._fetch_one("SELECT value FROM settings WHERE key = %s", (WEBHOOK_SETTING_KEY,))
        return (row["value"] or None) if row else None

    def save_webhook_url(self, url: str) -> None:
        self._execute(
            "INSERT INTO settings (key, value) VALUES (%s, %s) "
            "ON CONFLICT (key) DO UPDATE SET value = EXCLUDED.value",
            (WEBHOOK_SETTING_KEY, url),
        )

    def delete_webhook_url(self) -> None:
        self._execute("DELETE FROM settings WHERE key = %s", (WEBHOOK_SETTING_KEY,))


# ---------------------------------------------------------------------------
# Store selection
# ---------------------------------------------------------------------------

_STORE = None


def use_in_memory() -> bool:
    return os.getenv("USE_IN_MEMORY", "").lower() in {"1", "true", "yes"}


def get_store():
    """Return the process-wide store, honoring USE_IN_MEMORY."""
    global _STORE
    if _STORE is None:
        if use_in_memory():
            _STORE = InMemoryStore()
        else:
            ensure_db_ready()
            init_schema()
            _STORE = PostgresStore()
    return _STORE


def reset_store() -> None:
    """Drop the cached store (tests use this to start from a clean slate)."""
    global _STORE
    _STORE = None
