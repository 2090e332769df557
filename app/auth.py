"""
Authentication: password hashing, sessions and FastAPI guards.

Passwords are hashed with bcrypt. Login issues an opaque url-safe token stored
server-side with an expiry; clients send it as "Authorization: Bearer <token>".
Admins are the accounts whose email appears in ADMIN_EMAILS at sign-up time.
"""

from __future__ import annotations

import logging
import os
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, Set

import bcrypt
from fastapi import Depends, Header, HTTPException

from app.graph.state import User
from app.persistence import get_store

logger = logging.getLogger(__name__)


def admin_emails() -> Set[str]:
    raw = os.getenv("ADMIN_EMAILS", "")
    return {e.strip().lower() for e in raw.split(",") if e.strip()}


def hash_password(password: str) -> str:
    """Hash a password using bcrypt"""
    rounds = int(os.getenv("BCRYPT_ROUNDS", "12"))
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds))
    return hashed.decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a password against a hash"""
    return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))


def authenticate(email: str, password: str) -> Optional[User]:
    """Return the user when email and password match, else None."""
    credentials = get_store().get_credentials(email)
    if credentials is None:
        logger.warning(f"Authentication failed: user '{email}' not found")
        return None
    user, password_hash = credentials
    if not verify_password(password, password_hash):
        logger.warning(f"Authentication failed: invalid password for '{email}'")
        return None
    logger.info(f"User '{email}' authenticated successfully")
    return user


def create_session(user_id: str) -> str:
    """Create a session for a user and return its token."""
    token = secrets.token_urlsafe(32)
    ttl_hours = int(os.getenv("SESSION_TTL_HOURS", "24"))
    expires_at = datetime.now(timezone.utc) + timedelta(hours=ttl_hours)
    get_store().create_session(user_id, token, expires_at)
    logger.info(f"Created session for user {user_id}")
    return token


def validate_session(token: str) -> Optional[User]:
    """Return the session's user, or None for unknown/expired tokens."""
    store = get_store()
    session = store.get_session(token)
    if session is None:
        return None
    user_id, expires_at = session
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    if expires_at < datetime.now(timezone.utc):
        logger.info(f"Session for {user_id} expired")
        store.delete_session(token)
        return None
    return store.get_user(user_id)


def logout(token: str) -> bool:
    return get_store().delete_session(token)


# ---------------------------------------------------------------------------
# FastAPI dependencies
# ---------------------------------------------------------------------------

def bearer_token(authorization: Optional[str] = Header(default=None)) -> str:
    if not authorization:
        raise HTTPException(status_code=401, detail="Not authenticated.")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=401, detail="Invalid authorization header.")
    return token.strip()


def get_current_user(token: str = Depends(bearer_token)) -> User:
    user = validate_session(token)
    if user is None:
        raise HTTPException(status_code=401, detail="Session is invalid or has expired.")
    return user


def require_admin(user: User = Depends(get_current_user)) -> User:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Administrator access required.")
    return user
