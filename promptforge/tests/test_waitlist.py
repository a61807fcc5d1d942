"""
Tests for the waitlist signup endpoint.
"""
import pytest

from promptforge.core.errors import ValidationError
from promptforge.features.waitlist.service import validate_signup


def test_validate_signup_normalizes_email():
    assert validate_signup("  Ada@Example.COM ", " Ada ") == ("ada@example.com", "Ada")


@pytest.mark.parametrize(
    "email,name,code",
    [
        ("", "Ada", "missing_required_fields"),
        ("ada@example.com", "", "missing_required_fields"),
        (None, None, "missing_required_fields"),
        (123, "Ada", "missing_required_fields"),
        ("not-an-email", "Ada", "invalid_email"),
        ("ada@example", "Ada", "invalid_email"),
        ("a da@example.com", "Ada", "invalid_email"),
    ],
)
def test_validate_signup_rejects(email, name, code):
    with pytest.raises(ValidationError) as exc_info:
        validate_signup(email, name)
    assert exc_info.value.code == code


def test_join_waitlist(make_client, fake_backend):
    client = make_client(backend=fake_backend)

    resp = client.post("/api/waitlist", json={"email": "Ada@Example.com", "name": "Ada"})
    assert resp.status_code == 200
    data = resp.json()
    assert data["success"] is True
    assert data["message"] == "Successfully joined the waitlist"
    assert data["data"]["email"] == "ada@example.com"

    rows = fake_backend.tables["waitlist_signups"]
    assert len(rows) == 1
    assert rows[0]["name"] == "Ada"


def test_duplicate_signup_conflicts(make_client, fake_backend):
    fake_backend.tables["waitlist_signups"] = [{"id": "row-1", "email": "ada@example.com", "name": "Ada"}]
    client = make_client(backend=fake_backend)

    resp = client.post("/api/waitlist", json={"email": "ADA@example.com", "name": "Ada L."})
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "already_registered"
    assert len(fake_backend.tables["waitlist_signups"]) == 1


def test_invalid_email_returns_400(make_client, fake_backend):
    client = make_client(backend=fake_backend)

    resp = client.post("/api/waitlist", json={"email": "nope", "name": "Ada"})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "invalid_email"
    assert fake_backend.requests == []


def test_backend_unconfigured_returns_503(make_client, test_settings):
    test_settings(SUPABASE_URL=None, SUPABASE_SERVICE_ROLE_KEY=None)
    client = make_client()

    resp = client.post("/api/waitlist", json={"email": "ada@example.com", "name": "Ada"})
    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "backend_unconfigured"


def test_backend_failure_returns_500(make_client):
    from promptforge.tests.mocks import FakePostgrest

    client = make_client(backend=FakePostgrest(fail_tables={"waitlist_signups"}))

    resp = client.post("/api/waitlist", json={"email": "ada@example.com", "name": "Ada"})
    assert resp.status_code == 500
    assert resp.json()["error"]["code"] == "backend_error"


def test_status_endpoint(make_client):
    resp = make_client().get("/api/waitlist")
    assert resp.json() == {"message": "Waitlist API endpoint", "status": "active", "version": "3.0"}
