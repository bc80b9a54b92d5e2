"""
tests/test_api_accounts.py -- Integration tests for /api/v1/accounts.

Covers:
  - Provisioning: 201 on create, 200 on re-provision, no digest in the body
  - Login: 200 allowed, 403 gate denial with reason, 401 bad credentials
  - Wrong email and wrong password are indistinguishable
  - Eligibility re-evaluated on every call after PATCH
  - Password rotation and scope enforcement per route
"""

from __future__ import annotations


def _h(material: str) -> dict[str, str]:
    return {"X-API-Key": material}


def _provision(client, admin_key, email, password="Pr0vision-pass", **extra):
    return client.post(
        "/api/v1/accounts",
        json={"email": email, "password": password, **extra},
        headers=_h(admin_key),
    )


def test_provision_creates_then_updates(api_client):
    client, keys, _ = api_client
    first = _provision(client, keys["ops-admin"], "admin@example.com", role="super_admin")
    assert first.status_code == 201
    assert first.headers["Cache-Control"] == "no-store"
    body = first.json()
    assert body["created"] is True
    assert body["account"]["role"] == "super_admin"
    assert body["account"]["status"] == "active"
    assert "hashed_password" not in body["account"]
    assert "Pr0vision-pass" not in first.text

    second = _provision(client, keys["ops-admin"], "Admin@Example.com", password="N3w-password", role="user")
    assert second.status_code == 200
    assert second.json()["created"] is False
    assert second.json()["account"]["role"] == "super_admin"


def test_provision_requires_admin(api_client):
    client, keys, _ = api_client
    resp = _provision(client, keys["svc-writer"], "nope@example.com")
    assert resp.status_code == 401


def test_provision_short_password_is_validation_error(api_client):
    client, keys, _ = api_client
    resp = _provision(client, keys["ops-admin"], "short@example.com", password="abc")
    assert resp.status_code == 422


def test_login_allowed(api_client):
    client, keys, store = api_client
    _provision(client, keys["ops-admin"], "login-ok@example.com")
    resp = client.post(
        "/api/v1/accounts/login",
        json={"email": "login-ok@example.com", "password": "Pr0vision-pass"},
        headers=_h(keys["svc-reader"]),
    )
    assert resp.status_code == 200
    assert resp.headers["Cache-Control"] == "no-store"
    body = resp.json()
    assert body["allowed"] is True
    assert body["reason"] is None
    assert body["account"]["email"] == "login-ok@example.com"
    assert store.find_account_by_email("login-ok@example.com").last_login is not None


def test_login_bad_credentials_uniform(api_client):
    client, keys, _ = api_client
    _provision(client, keys["ops-admin"], "login-bad@example.com")
    wrong_password = client.post(
        "/api/v1/accounts/login",
        json={"email": "login-bad@example.com", "password": "wrong"},
        headers=_h(keys["svc-reader"]),
    )
    wrong_email = client.post(
        "/api/v1/accounts/login",
        json={"email": "ghost@example.com", "password": "wrong"},
        headers=_h(keys["svc-reader"]),
    )
    assert wrong_password.status_code == wrong_email.status_code == 401
    assert wrong_password.json() == wrong_email.json()
    assert wrong_password.json()["error"]["code"] == "bad_credentials"


def test_login_requires_key(api_client):
    client, _, _ = api_client
    resp = client.post(
        "/api/v1/accounts/login",
        json={"email": "login-ok@example.com", "password": "Pr0vision-pass"},
    )
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "unauthorized"


def test_inactive_account_login_denied(api_client):
    """Correct password, is_active=false, status active -> 403 INACTIVE."""
    client, keys, _ = api_client
    _provision(client, keys["ops-admin"], "manager@example.com", role="manager")
    patched = client.patch(
        "/api/v1/accounts/manager@example.com",
        json={"is_active": False},
        headers=_h(keys["svc-writer"]),
    )
    assert patched.status_code == 200
    assert patched.json()["is_active"] is False
    assert patched.json()["status"] == "active"

    resp = client.post(
        "/api/v1/accounts/login",
        json={"email": "manager@example.com", "password": "Pr0vision-pass"},
        headers=_h(keys["svc-reader"]),
    )
    assert resp.status_code == 403
    assert resp.json()["allowed"] is False
    assert resp.json()["reason"] == "INACTIVE"


def test_status_change_takes_effect_immediately(api_client):
    client, keys, _ = api_client
    _provision(client, keys["ops-admin"], "customer@example.com", role="user")
    url = "/api/v1/accounts/customer@example.com/eligibility"
    assert client.get(url, headers=_h(keys["svc-reader"])).json()["allowed"] is True

    client.patch(
        "/api/v1/accounts/customer@example.com",
        json={"status": "suspended"},
        headers=_h(keys["svc-writer"]),
    )
    body = client.get(url, headers=_h(keys["svc-reader"])).json()
    assert body["allowed"] is False
    assert body["reason"] == "STATUS"
    assert body["detail"] == "suspended"

    client.patch(
        "/api/v1/accounts/customer@example.com",
        json={"status": "active"},
        headers=_h(keys["svc-writer"]),
    )
    assert client.get(url, headers=_h(keys["svc-reader"])).json()["allowed"] is True


def test_eligibility_unknown_account(api_client):
    client, keys, _ = api_client
    resp = client.get("/api/v1/accounts/ghost@example.com/eligibility", headers=_h(keys["svc-reader"]))
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "not_found"


def test_patch_requires_write(api_client):
    client, keys, _ = api_client
    resp = client.patch(
        "/api/v1/accounts/customer@example.com",
        json={"status": "pending"},
        headers=_h(keys["svc-reader"]),
    )
    assert resp.status_code == 401


def test_patch_without_fields(api_client):
    client, keys, _ = api_client
    _provision(client, keys["ops-admin"], "empty-patch@example.com")
    resp = client.patch("/api/v1/accounts/empty-patch@example.com", json={}, headers=_h(keys["svc-writer"]))
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "no_changes"


def test_patch_unknown_account(api_client):
    client, keys, _ = api_client
    resp = client.patch(
        "/api/v1/accounts/ghost@example.com",
        json={"role": "manager"},
        headers=_h(keys["svc-writer"]),
    )
    assert resp.status_code == 404


def test_password_rotation(api_client):
    client, keys, _ = api_client
    _provision(client, keys["ops-admin"], "rotate@example.com")
    resp = client.put(
        "/api/v1/accounts/rotate@example.com/password",
        json={"password": "Br4nd-new-pass"},
        headers=_h(keys["svc-writer"]),
    )
    assert resp.status_code == 200

    def login(pw):
        return client.post(
            "/api/v1/accounts/login",
            json={"email": "rotate@example.com", "password": pw},
            headers=_h(keys["svc-reader"]),
        )

    assert login("Br4nd-new-pass").status_code == 200
    assert login("Pr0vision-pass").status_code == 401


def test_patch_applies_all_fields_in_one_write(api_client):
    client, keys, store = api_client
    _provision(client, keys["ops-admin"], "combined@example.com", role="user")
    before = store.find_account_by_email("combined@example.com").version

    resp = client.patch(
        "/api/v1/accounts/combined@example.com",
        json={"status": "suspended", "is_active": False, "role": "manager"},
        headers=_h(keys["svc-writer"]),
    )
    assert resp.status_code == 200
    body = resp.json()
    assert (body["status"], body["is_active"], body["role"]) == ("suspended", False, "manager")
    assert store.find_account_by_email("combined@example.com").version == before + 1
