"""HTTP flows through the FastAPI app against the in-memory runtime."""

import pytest
from fastapi.testclient import TestClient

from hardyauth import app as app_module
from hardyauth.service.runtime import get_runtime, reset_runtime_for_tests

PASSWORD = "Blue.Lantern.42x"


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _register(client, email, password=PASSWORD):
    response = client.post("/v1/auth/register", json={"email": email, "password": password})
    assert response.status_code == 201, response.text
    return response.json()["data"]["id"]


def _login(client, email, password=PASSWORD, **extra):
    response = client.post(
        "/v1/auth/login", json={"email": email, "password": password, **extra}
    )
    # requests authenticate explicitly with a bearer header
    client.cookies.clear()
    return response


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


def _token(client, email, **extra):
    response = _login(client, email, **extra)
    assert response.status_code == 200, response.text
    return response.json()["data"]["session_token"]


def test_health_and_security_headers(client):
    response = client.get("/healthz", headers={"X-Request-ID": "trace-123"})
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.headers["X-Request-ID"] == "trace-123"
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["X-Content-Type-Options"] == "nosniff"


def test_register_login_me_logout(client):
    principal_id = _register(client, "ana@clinic.example")

    response = client.post(
        "/v1/auth/login", json={"email": "ana@clinic.example", "password": PASSWORD}
    )
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["data"]["principal_id"] == principal_id
    token = body["data"]["session_token"]
    assert response.cookies.get("hardy_auth.session_token") == token
    assert response.headers["Cache-Control"].startswith("no-store")

    # the login cookie alone authenticates
    me = client.get("/v1/auth/me")
    assert me.status_code == 200
    assert me.json()["data"]["email"] == "ana@clinic.example"
    assert me.json()["data"]["organization_id"] is None

    client.cookies.clear()
    assert client.post("/v1/auth/logout", headers=_bearer(token)).status_code == 200
    after = client.get("/v1/auth/me", headers=_bearer(token))
    assert after.status_code == 401
    assert after.json()["error"]["details"]["reason"] == "session_not_found"


def test_register_rejects_weak_password_and_bad_email(client):
    weak = client.post(
        "/v1/auth/register", json={"email": "bo@clinic.example", "password": "weakpass"}
    )
    assert weak.status_code == 400
    assert weak.json()["error"]["code"] == "validation_error"
    assert weak.json()["error"]["details"] == {"reason": "password_policy", "rule": "too_short"}

    bad_email = client.post(
        "/v1/auth/register", json={"email": "not-an-email", "password": PASSWORD}
    )
    assert bad_email.status_code == 422


def test_duplicate_registration_conflicts(client):
    _register(client, "ana@clinic.example")
    response = client.post(
        "/v1/auth/register", json={"email": "ANA@clinic.example", "password": PASSWORD}
    )
    assert response.status_code == 409
    assert response.json()["error"]["code"] == "conflict"


def test_me_without_session(client):
    response = client.get("/v1/auth/me")
    assert response.status_code == 401
    error = response.json()["error"]
    assert error["code"] == "unauthorized"
    assert error["details"]["reason"] == "session_missing"


def test_invalid_login_is_generic(client):
    _register(client, "ana@clinic.example")
    wrong = _login(client, "ana@clinic.example", "Wrong-Lantern-1x")
    missing = _login(client, "ghost@clinic.example")
    assert wrong.status_code == missing.status_code == 401
    assert wrong.json()["error"]["message"] == missing.json()["error"]["message"]


def test_two_factor_via_http(client):
    _register(client, "ana@clinic.example")
    token = _token(client, "ana@clinic.example")
    headers = _bearer(token)

    setup = client.post("/v1/auth/two-factor/setup", headers=headers)
    assert setup.status_code == 200
    secret = setup.json()["data"]["secret"]

    auth = get_runtime().auth
    code = auth.totp.current_code(secret, auth.clock.now().timestamp())
    verify = client.post("/v1/auth/two-factor/verify", json={"code": code}, headers=headers)
    assert verify.status_code == 200
    backup_codes = verify.json()["data"]["codes"]
    assert len(backup_codes) == 8

    status = client.get("/v1/auth/two-factor/status", headers=headers).json()["data"]
    assert status == {"enabled": True, "pending": False, "backup_codes_remaining": 8}

    needs_mfa = _login(client, "ana@clinic.example")
    assert needs_mfa.status_code == 401
    assert needs_mfa.json()["error"]["details"]["reason"] == "mfa_required"

    assert _login(client, "ana@clinic.example", backup_code=backup_codes[0]).status_code == 200

    wrong = client.post(
        "/v1/auth/two-factor/disable", json={"password": "Wrong-Lantern-1x"}, headers=headers
    )
    assert wrong.status_code == 401
    entry = auth.audit.query(action="totp.disable")[0]
    assert (entry.outcome, entry.reason) == ("failure", "invalid_credentials")

    disabled = client.post(
        "/v1/auth/two-factor/disable", json={"password": PASSWORD}, headers=headers
    )
    assert disabled.status_code == 200
    assert _login(client, "ana@clinic.example").status_code == 200


def test_password_change_via_http(client):
    _register(client, "ana@clinic.example")
    headers = _bearer(_token(client, "ana@clinic.example"))

    reused = client.post(
        "/v1/auth/password/change",
        json={"current_password": PASSWORD, "new_password": PASSWORD},
        headers=headers,
    )
    assert reused.status_code == 400
    assert reused.json()["error"]["details"] == {"reason": "password_policy", "rule": "reused"}

    changed = client.post(
        "/v1/auth/password/change",
        json={"current_password": PASSWORD, "new_password": "Quiet#River2024x"},
        headers=headers,
    )
    assert changed.status_code == 200
    assert _login(client, "ana@clinic.example", "Quiet#River2024x").status_code == 200


def test_admin_routes_enforce_tenant_and_capability(client):
    admin_id = _register(client, "lead@clinic.example")
    nurse_id = _register(client, "bo@clinic.example")
    auth = get_runtime().auth
    auth.add_membership(admin_id, "org-a", "tenant_admin")
    auth.add_membership(nurse_id, "org-a", "staff")

    admin = _bearer(_token(client, "lead@clinic.example"))
    staff = _bearer(_token(client, "bo@clinic.example"))

    newcomer = _register(client, "cy@clinic.example")
    created = client.post(
        "/v1/admin/memberships",
        json={"principal_id": newcomer, "organization_id": "org-a", "role": "clinician"},
        headers=admin,
    )
    assert created.status_code == 201, created.text
    assert created.json()["data"]["role"] == "clinician"

    cross_tenant = client.post(
        "/v1/admin/memberships",
        json={"principal_id": newcomer, "organization_id": "org-b", "role": "staff"},
        headers=admin,
    )
    assert cross_tenant.status_code == 403

    denied = client.get("/v1/admin/audit", headers=staff)
    assert denied.status_code == 403
    assert denied.json()["error"]["details"]["missing"] == ["audit:read"]

    audit = client.get("/v1/admin/audit", params={"action": "member.create"}, headers=admin)
    assert audit.status_code == 200
    entries = audit.json()["data"]
    assert entries
    assert all(e["organization_id"] == "org-a" for e in entries)


def test_unscoped_user_cannot_read_audit(client):
    _register(client, "solo@clinic.example")
    response = client.get(
        "/v1/admin/audit", headers=_bearer(_token(client, "solo@clinic.example"))
    )
    assert response.status_code == 403
    assert response.json()["error"]["details"]["reason"] == "tenant_required"


def test_system_admin_sees_all_organizations(client, monkeypatch):
    monkeypatch.setenv("ADMIN_DOMAINS", "hardy.example")
    reset_runtime_for_tests()

    _register(client, "root@hardy.example")
    member_id = _register(client, "ana@clinic.example")
    get_runtime().auth.add_membership(member_id, "org-z", "staff")
    _token(client, "ana@clinic.example")

    response = client.get(
        "/v1/admin/audit", headers=_bearer(_token(client, "root@hardy.example"))
    )
    assert response.status_code == 200
    me = client.get("/v1/auth/me", headers=_bearer(_token(client, "root@hardy.example")))
    assert me.json()["data"]["is_system_admin"] is True


def test_login_rate_limit_returns_retry_after(client, monkeypatch):
    monkeypatch.setenv("RATE_LIMIT_MAX_REQUESTS", "2")
    reset_runtime_for_tests()
    _register(client, "ana@clinic.example")

    assert _login(client, "ana@clinic.example").status_code == 200
    assert _login(client, "ana@clinic.example").status_code == 200
    limited = _login(client, "ana@clinic.example")
    assert limited.status_code == 429
    assert limited.json()["error"]["code"] == "rate_limited"
    assert int(limited.headers["Retry-After"]) >= 1


def test_password_reset_via_http(client):
    _register(client, "ana@clinic.example")
    delivered = []

    async def notifier(principal, token):
        delivered.append(token)

    get_runtime().auth.reset_notifier = notifier
    known = client.post("/v1/auth/password/reset/request", json={"email": "ana@clinic.example"})
    unknown = client.post("/v1/auth/password/reset/request", json={"email": "bo@clinic.example"})
    assert known.status_code == unknown.status_code == 202
    assert known.json()["data"] == unknown.json()["data"]
    [token] = delivered

    weak = client.post(
        "/v1/auth/password/reset/complete", json={"token": token, "new_password": "weakpass"}
    )
    assert weak.status_code == 400
    assert weak.json()["error"]["details"]["rule"] == "too_short"

    done = client.post(
        "/v1/auth/password/reset/complete",
        json={"token": token, "new_password": "Quiet#River2024x"},
    )
    assert done.status_code == 200, done.text
    assert _login(client, "ana@clinic.example", "Quiet#River2024x").status_code == 200

    replay = client.post(
        "/v1/auth/password/reset/complete",
        json={"token": token, "new_password": "Other.Lantern.77x"},
    )
    assert replay.status_code == 400
    assert replay.json()["error"]["details"]["reason"] == "invalid_reset_token"


def test_register_rate_limit(client, monkeypatch):
    monkeypatch.setenv("RATE_LIMIT_MAX_REQUESTS", "2")
    reset_runtime_for_tests()
    _register(client, "ana@clinic.example")
    _register(client, "bo@clinic.example")
    limited = client.post(
        "/v1/auth/register", json={"email": "cy@clinic.example", "password": PASSWORD}
    )
    assert limited.status_code == 429
    assert "Retry-After" in limited.headers
