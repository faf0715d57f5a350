import os

os.environ["ORG_EMAIL_DOMAIN"] = "org.com"
os.environ["ADMIN_EMAILS"] = "admin@org.com, outside-admin@partner.com"
os.environ["CLIENT_EMAILS"] = ""
os.environ["PILOT_EMAILS"] = ""
os.environ["USE_DATABASE_ROLES"] = "false"
os.environ["OAUTH_CALLBACK_SECRET"] = "callback-secret"
os.environ["RECAPTCHA_SECRET_KEY"] = "recaptcha-secret"
os.environ["JWT_SECRET"] = "test-secret"
os.environ.pop("DATABASE_URL", None)
os.environ.pop("SMTP_HOST", None)

import mongomock
import pytest

import database

# Every module binds `db` at import time, so the in-memory client goes in first
database.db = mongomock.MongoClient().db

import emails  # noqa: E402
import rate_limit  # noqa: E402
import roles  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from main import app  # noqa: E402
from security import create_token, hash_password  # noqa: E402

COLLECTIONS = ["booking", "invitation", "user", "promo", "account", "session"]


@pytest.fixture(autouse=True)
def clean_state():
    for name in COLLECTIONS:
        database.db[name].drop()
    database.ensure_indexes()
    roles.clear_cache()
    rate_limit.reset_all()
    yield
    roles.clear_cache()


@pytest.fixture(autouse=True)
def sent_emails(monkeypatch):
    sent = []

    def fake_send(to_email, subject, html_body, text_body=None, reply_to=None):
        sent.append({"to": to_email, "subject": subject, "html": html_body, "text": text_body, "reply_to": reply_to})

    monkeypatch.setattr(emails, "send_email", fake_send)
    return sent


@pytest.fixture
def db():
    return database.db


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def make_user():
    def _make(email, role="client", has_access=True, password=None, verified=True, **extra):
        doc = {
            "email": email.lower(),
            "name": extra.pop("name", email.split("@")[0].title()),
            "role": role,
            "has_access": has_access,
            "password_hash": hash_password(password) if password else None,
            "email_verification": {"verified": verified, "token": None, "expires": None},
            "notifications": {"booking_confirmations": True},
            "role_history": [],
            "access_history": [],
        }
        doc.update(extra)
        user_id = database.create_document("user", doc)
        return database.db["user"].find_one({"_id": database.oid(user_id)})

    return _make


def headers_for(user):
    token = create_token(str(user["_id"]), roles.session_role(user), user["email"])
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin(make_user):
    return make_user("admin@org.com", role="admin")


@pytest.fixture
def admin_headers(admin):
    return headers_for(admin)


@pytest.fixture
def auth():
    return headers_for
