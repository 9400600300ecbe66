from fastapi.testclient import TestClient

from fakes import FakeSender, FakeSupabase, RecordingDispatcher, make_runtime
from src.domain.ledger import LEDGER_TABLE
from src.domain.tracking import TRACKING_CONTEXT_TABLE
from src.main import app
from src.providers.meta.client import sha256
from src.rate_limit import limiter
from src.runtime import get_runtime


def _client(runtime) -> TestClient:
    limiter.reset()
    app.dependency_overrides[get_runtime] = lambda: runtime
    return TestClient(app)


def _clear_overrides():
    app.dependency_overrides.clear()


def _body(**overrides) -> dict:
    body = {
        "fname": "Ada",
        "em": " Ada@Example.com ",
        "brand": "HRYW",
        "sourceId": "homepage-popup",
        "redirectSlug": "/thanks",
        "eventId": "evt-browser-123",
        "fbp": "fb.1.111",
        "fbc": "fb.1.222",
        "utm_source": "facebook",
        "sourceUrl": "https://hryw.example.com/join",
    }
    body.update(overrides)
    return body


def test_subscribe_records_tracking_and_sends_subscribe_event():
    db = FakeSupabase()
    sender = FakeSender()
    client = _client(make_runtime(db=db, sender=sender))

    response = client.post(
        "/subscribe",
        json=_body(),
        headers={"X-Forwarded-For": "203.0.113.5, 10.0.0.1", "User-Agent": "pytest-agent"},
    )

    assert response.status_code == 200
    assert response.json() == {"success": True, "redirectUrl": "/thanks"}

    tracking = db.tables[TRACKING_CONTEXT_TABLE][0]
    assert tracking["brand"] == "hryw"
    assert tracking["email"] == "ada@example.com"
    assert tracking["pixel_id"] == "pixel-hryw"
    assert tracking["ip_address"] == "203.0.113.5"
    assert tracking["utm_source"] == "facebook"

    event = sender.calls[0]["events"][0]
    assert event["event_name"] == "Subscribe"
    assert event["event_id"] == "evt-browser-123"
    assert event["event_source_url"] == "https://hryw.example.com/join"
    assert event["user_data"]["em"] == sha256("ada@example.com")
    assert event["user_data"]["fbp"] == "fb.1.111"
    assert event["user_data"]["client_ip_address"] == "203.0.113.5"
    assert event["user_data"]["client_user_agent"] == "pytest-agent"

    rows = db.tables[LEDGER_TABLE]
    assert {row["source"] for row in rows} == {"subscribe"}
    assert rows[-1]["status"] == "SENT"
    assert rows[0]["email_hash"] == sha256("ada@example.com")
    _clear_overrides()


def test_honeypot_is_rejected_without_side_effects():
    db = FakeSupabase()
    dispatcher = RecordingDispatcher()
    client = _client(make_runtime(db=db, dispatcher=dispatcher))

    response = client.post("/subscribe", json=_body(website="http://spam.example"))

    assert response.status_code == 400
    assert response.json() == {"success": False, "error": "Invalid submission"}
    assert TRACKING_CONTEXT_TABLE not in db.tables
    assert dispatcher.submitted == []
    _clear_overrides()


def test_unknown_brand_is_rejected():
    client = _client(make_runtime())
    response = client.post("/subscribe", json=_body(brand="acme"))
    assert response.status_code == 400
    assert "Unknown brand: acme" in response.json()["error"]
    _clear_overrides()


def test_missing_required_fields_fail_validation():
    client = _client(make_runtime())
    response = client.post("/subscribe", json={"brand": "hryw"})
    assert response.status_code == 422
    _clear_overrides()


def test_explicit_pixel_overrides_brand_pixel():
    sender = FakeSender()
    client = _client(make_runtime(sender=sender))
    response = client.post("/subscribe", json=_body(pixelId="pixel-landing-page"))
    assert response.status_code == 200
    assert sender.calls[0]["pixel_id"] == "pixel-landing-page"
    _clear_overrides()


def test_subscribe_is_rate_limited_per_client_ip():
    dispatcher = RecordingDispatcher()
    client = _client(make_runtime(dispatcher=dispatcher))
    first_ip = {"X-Forwarded-For": "198.51.100.7, 10.0.0.1"}

    statuses = [client.post("/subscribe", json=_body(), headers=first_ip).status_code for _ in range(10)]
    assert statuses == [200] * 10

    limited = client.post("/subscribe", json=_body(), headers=first_ip)
    assert limited.status_code == 429
    assert limited.json() == {"success": False, "error": "Too many requests, please try again later"}
    assert len(dispatcher.submitted) == 10

    other_ip = client.post("/subscribe", json=_body(), headers={"X-Forwarded-For": "198.51.100.8"})
    assert other_ip.status_code == 200
    _clear_overrides()
