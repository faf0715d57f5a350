import pytest
import requests

import captcha
import emails
from errors import UnknownError


def contact_payload(**overrides):
    payload = {
        "name": "Jane Doe",
        "email": "jane@example.com",
        "subject": "Roof inspection",
        "message": "Can you inspect a roof next month?",
        "recaptcha_token": "token-123",
    }
    payload.update(overrides)
    return payload


class FakeResponse:
    def __init__(self, body, status=200):
        self.body = body
        self.status = status

    def raise_for_status(self):
        if self.status >= 400:
            raise requests.exceptions.HTTPError(f"{self.status} error")

    def json(self):
        return self.body


@pytest.fixture
def captcha_ok(monkeypatch):
    monkeypatch.setattr(captcha, "verify_captcha", lambda token, remote_ip=None: True)


def test_contact_forwards_to_support(client, captcha_ok, sent_emails):
    resp = client.post("/contact", json=contact_payload())
    assert resp.status_code == 200
    assert sent_emails[-1]["to"] == "support@org.com"
    assert sent_emails[-1]["reply_to"] == "jane@example.com"


def test_contact_limit(client, captcha_ok):
    for _ in range(5):
        assert client.post("/contact", json=contact_payload()).status_code == 200
    assert client.post("/contact", json=contact_payload()).status_code == 429


@pytest.mark.parametrize("overrides,error", [
    ({"recaptcha_token": None}, "Missing reCAPTCHA"),
    ({"message": ""}, "Missing required fields"),
    ({"email": "nope"}, "Invalid email"),
])
def test_contact_validation(client, captcha_ok, overrides, error):
    resp = client.post("/contact", json=contact_payload(**overrides))
    assert resp.status_code == 400
    assert resp.json()["error"] == error


def test_contact_rejects_failed_captcha(client, monkeypatch):
    monkeypatch.setattr(captcha, "verify_captcha", lambda token, remote_ip=None: False)
    resp = client.post("/contact", json=contact_payload())
    assert resp.status_code == 400
    assert resp.json()["error"] == "reCAPTCHA verification failed"


def test_contact_delivery_failure_is_reported(client, captcha_ok, monkeypatch):
    def broken(*args, **kwargs):
        raise emails.EmailNotConfigured("SMTP not configured")

    monkeypatch.setattr(emails, "send_email", broken)
    resp = client.post("/contact", json=contact_payload())
    assert resp.status_code == 500
    assert "Failed to send" in resp.json()["message"]


def test_verify_captcha_posts_secret_and_ip(monkeypatch):
    calls = []

    def fake_post(url, data=None, timeout=None):
        calls.append(data)
        return FakeResponse({"success": True})

    monkeypatch.setattr(captcha.requests, "post", fake_post)
    assert captcha.verify_captcha("tok", "1.2.3.4") is True
    assert calls == [{"secret": "recaptcha-secret", "response": "tok", "remoteip": "1.2.3.4"}]


def test_verify_captcha_reports_service_errors(monkeypatch):
    monkeypatch.setattr(captcha.requests, "post", lambda *a, **kw: FakeResponse({}, status=503))
    with pytest.raises(UnknownError):
        captcha.verify_captcha("tok")


def test_verify_captcha_requires_configuration(monkeypatch):
    monkeypatch.delenv("RECAPTCHA_SECRET_KEY")
    with pytest.raises(UnknownError):
        captcha.verify_captcha("tok")
