from datetime import timedelta

import pytest

from app.auth.session import RevocationSet, SessionAuthority
from app.auth.utils import hash_password, validate_password, validate_username, verify_password
from app.db import get_connection
from app.errors import ValidationError
from app.models import Identity
from app.security.totp import generate_totp
from conftest import PASSWORD


def test_password_hash():
    password = "testpassword123"
    hashed = hash_password(password)
    assert hashed != password
    assert verify_password(password, hashed)
    assert not verify_password("wrong", hashed)


@pytest.mark.parametrize("username", ["", "ab", "x" * 51, "bad name", "semi;colon"])
def test_invalid_usernames(username):
    with pytest.raises(ValidationError) as exc:
        validate_username(username)
    assert exc.value.field == "username"


@pytest.mark.parametrize("password", ["Short1", "alllowercase1", "ALLUPPERCASE1", "NoDigitsHere"])
def test_weak_passwords(password):
    with pytest.raises(ValidationError):
        validate_password(password)


@pytest.fixture
def authority(db_path, clock):
    return SessionAuthority("test-secret", clock=clock)


def test_issue_and_verify_round_trip(authority):
    identity = Identity(id=7, username="alice", is_admin=True, is_site_owner=False)
    token = authority.issue(identity)

    verified = authority.verify(token)
    assert verified is not None
    assert verified.public() == identity.public()
    assert verified.jti


def test_verify_rejects_garbage(authority):
    assert authority.verify("invalid") is None
    assert authority.verify("") is None
    assert authority.verify(None) is None


def test_verify_rejects_other_secret(authority, clock):
    other = SessionAuthority("other-secret", clock=clock)
    token = other.issue(Identity(id=1, username="alice"))
    assert authority.verify(token) is None


def test_verify_rejects_tampered_token(authority):
    token = authority.issue(Identity(id=1, username="alice"))
    header, payload, signature = token.split(".")
    tampered = ".".join([header, payload, signature[:-2] + ("AA" if signature[-2:] != "AA" else "BB")])
    assert authority.verify(tampered) is None


def test_token_expires_after_seven_days(authority, clock):
    token = authority.issue(Identity(id=1, username="alice"))
    clock.advance(timedelta(days=7).total_seconds() - 1)
    assert authority.verify(token) is not None
    clock.advance(1)
    assert authority.verify(token) is None


def test_revoke_invalidates_token(authority):
    token = authority.issue(Identity(id=1, username="alice"))
    other = authority.issue(Identity(id=1, username="alice"))

    assert authority.revoke(token)
    assert authority.verify(token) is None
    assert authority.verify(other) is not None

    with get_connection() as conn:
        row = conn.execute("SELECT COUNT(*) FROM user_sessions WHERE revoked_at IS NOT NULL").fetchone()
    assert row[0] == 1


def test_revoke_garbage_returns_false(authority):
    assert authority.revoke("not-a-token") is False


def test_revocation_set_forgets_expired_entries(clock):
    revocations = RevocationSet(clock)
    revocations.add("a", clock() + 10)
    revocations.add("b", clock() + 100)
    assert "a" in revocations
    clock.advance(50)
    assert "a" not in revocations
    assert "b" in revocations
    assert revocations.prune() == 0
    assert len(revocations) == 1


def test_store_check_honours_revocation_from_another_instance(db_path, clock):
    first = SessionAuthority("shared", store_check=True, clock=clock)
    second = SessionAuthority("shared", store_check=True, clock=clock)
    token = first.issue(Identity(id=1, username="alice"))

    assert second.verify(token) is not None
    first.revoke(token)
    assert second.verify(token) is None


def test_register(client):
    resp = client.post(
        "/api/auth/register",
        json={"username": "newuser", "password": PASSWORD, "confirm_password": PASSWORD},
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["user"]["username"] == "newuser"


def test_register_password_mismatch(client):
    resp = client.post(
        "/api/auth/register",
        json={"username": "newuser", "password": PASSWORD, "confirm_password": "Different123"},
    )
    assert resp.status_code == 400
    assert resp.json()["field"] == "confirm_password"


def test_register_duplicate_username(client, user):
    resp = client.post("/api/auth/register", json={"username": "alice", "password": PASSWORD})
    assert resp.status_code == 400
    assert resp.json()["error"] == "Username already exists"


def test_login_sets_cookie_and_me_works(client, user, audit_events):
    resp = client.post("/api/auth/login", json={"username": "alice", "password": PASSWORD})
    assert resp.status_code == 200
    assert "auth-token" in resp.cookies
    assert "httponly" in resp.headers["set-cookie"].lower()

    me = client.get("/api/auth/me")
    assert me.status_code == 200
    assert me.json()["user"]["username"] == "alice"

    events = audit_events()
    assert [e["event_type"] for e in events] == ["login_success"]


def test_login_invalid(client, user, audit_events):
    resp = client.post("/api/auth/login", json={"username": "alice", "password": "Wrong1234"})
    assert resp.status_code == 401

    resp = client.post("/api/auth/login", json={"username": "nobody", "password": "Wrong1234"})
    assert resp.status_code == 401

    events = audit_events()
    assert [e["event_type"] for e in events] == ["failed_login", "failed_login"]
    assert all(not e["success"] for e in events)


def test_logout_revokes_token(client, user, services):
    resp = client.post("/api/auth/login", json={"username": "alice", "password": PASSWORD})
    token = resp.json()["token"]

    assert client.post("/api/auth/logout").json() == {"success": True}
    assert services.authority.verify(token) is None

    resp = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 401


def test_login_rate_limited_after_five_attempts(client, user, services, audit_events):
    headers = {"X-Forwarded-For": "1.2.3.4"}
    for _ in range(5):
        resp = client.post(
            "/api/auth/login", json={"username": "alice", "password": "Wrong1234"}, headers=headers
        )
        assert resp.status_code == 401

    resp = client.post("/api/auth/login", json={"username": "alice", "password": PASSWORD}, headers=headers)
    assert resp.status_code == 429
    body = resp.json()
    assert body["success"] is False
    assert 0 < body["retryAfter"] <= 15 * 60
    assert services.login_limiter.get_remaining_time("1.2.3.4") > 0

    # Another address is unaffected
    resp = client.post(
        "/api/auth/login", json={"username": "alice", "password": PASSWORD}, headers={"X-Forwarded-For": "5.6.7.8"}
    )
    assert resp.status_code == 200
    assert len(audit_events()) == 7
    assert len(audit_events("login_rate_limited")) == 1


def test_banned_user(client, user, auth_headers, audit_events):
    headers = auth_headers(user)
    with get_connection() as conn:
        conn.execute("UPDATE users SET is_banned = 1 WHERE id = ?", (user.id,))

    assert client.get("/api/auth/me", headers=headers).status_code == 403

    resp = client.post("/api/auth/login", json={"username": "alice", "password": PASSWORD})
    assert resp.status_code == 401
    assert audit_events("failed_login")[0]["error_message"] == "account_banned"


def test_login_requires_mfa_when_enabled(client, user, services, clock, audit_events):
    secret = services.mfa.setup_totp(user.id, user.username)["secret"]
    services.mfa.verify_and_enable(user.id, generate_totp(secret, clock()))
    before = len(audit_events())

    resp = client.post("/api/auth/login", json={"username": "alice", "password": PASSWORD})
    assert resp.status_code == 401
    assert resp.json()["mfa_required"] is True

    clock.advance(30)
    resp = client.post(
        "/api/auth/login",
        json={"username": "alice", "password": PASSWORD, "mfa_code": generate_totp(secret, clock())},
    )
    assert resp.status_code == 200

    types = [e["event_type"] for e in audit_events()[before:]]
    assert types == ["failed_login", "login_success"]
