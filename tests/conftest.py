"""
Pytest configuration and fixtures.

Everything runs against the in-memory store and a fake chat model, so no
database, network or GOOGLE_API_KEY is needed.
"""

import os
import sys
import tempfile

import pytest

sys.path.append(os.path.join(os.path.dirname(os.path.abspath(__file__)), os.pardir))

os.environ["USE_IN_MEMORY"] = "1"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["ADMIN_EMAILS"] = "admin@starcart.test"
os.environ.setdefault("IMAGE_UPLOAD_DIR", tempfile.mkdtemp(prefix="starcart-uploads-"))

from fastapi.testclient import TestClient
from langchain_core.messages import AIMessage

from app import persistence
from app.graph.nodes import audit
from app.main import app, limiter

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64
JPEG_BYTES = b"\xff\xd8\xff\xe0" + b"\x00" * 64
PNG_DATA_URL = "data:image/png;base64,iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNk+M9QDwADhgGAWjR9awAAAABJRU5ErkJggg=="


class FakeChatModel:
    """Stands in for ChatGoogleGenerativeAI.

    Each invoke() pops the next reply: a string becomes an AIMessage, an
    exception instance is raised.
    """

    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls = []

    def invoke(self, messages):
        self.calls.append(messages)
        reply = self.replies.pop(0) if self.replies else ""
        if isinstance(reply, BaseException):
            raise reply
        if isinstance(reply, AIMessage):
            return reply
        return AIMessage(content=reply)


@pytest.fixture(autouse=True)
def store():
    persistence.reset_store()
    yield persistence.get_store()
    persistence.reset_store()


@pytest.fixture
def use_model(monkeypatch):
    """Install a FakeChatModel with the given replies as the audit model."""

    def _install(*replies):
        model = FakeChatModel(*replies)
        monkeypatch.setattr(audit, "_get_model", lambda: model)
        return model

    return _install


@pytest.fixture
def client():
    limiter.enabled = False
    with TestClient(app) as c:
        yield c
    limiter.enabled = True


@pytest.fixture
def webhook_calls(monkeypatch, store):
    """Capture outgoing webhook POSTs instead of sending them."""
    import httpx
    from app import webhook

    calls = []

    def _fake_post(url, json=None, timeout=None):
        calls.append({"url": url, "json": json})
        return httpx.Response(200, request=httpx.Request("POST", url))

    monkeypatch.setattr(webhook.httpx, "post", _fake_post)
    store.save_webhook_url("https://hooks.example.com/starcart")
    return calls


def signup(client, email, password="secret123", **extra):
    resp = client.post("/auth/signup", json={"email": email, "password": password, **extra})
    assert resp.status_code == 201, resp.text
    return resp.json()


def auth_headers(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def user_session(client):
    data = signup(client, "ana@starcart.test", first_name="Ana", last_name="Lopez")
    return data["token"], data["user"]


@pytest.fixture
def admin_session(client):
    data = signup(client, "admin@starcart.test")
    return data["token"], data["user"]
