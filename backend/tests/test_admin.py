import pytest

from nutriclinic.models.audit import AuditEvent
from nutriclinic.models.user import UserRole

from conftest import STRONG_PASSWORD, bearer


def _token(client, email, remember=False):
    response = client.post("/auth/login", json={"email": email, "password": STRONG_PASSWORD, "remember": remember})
    assert response.status_code == 200, response.text
    return response.json()


@pytest.fixture
def admin_headers(client, make_user):
    make_user(email="admin@example.com", role=UserRole.ADMIN, full_name="Admin Root")
    return bearer(_token(client, "admin@example.com")["access_token"])


def test_listing_requires_admin(client, make_user):
    make_user(email="patient@example.com")
    headers = bearer(_token(client, "patient@example.com")["access_token"])
    response = client.get("/admin/users", headers=headers)
    assert response.status_code == 403
    assert response.json()["error"] == "Admin access required"

    assert client.get("/admin/users").status_code == 401


def test_listing_is_cached_until_a_mutation(client, make_user, admin_headers, user_cache):
    patient = make_user(email="patient@example.com")

    first = client.get("/admin/users", headers=admin_headers)
    assert first.status_code == 200
    assert first.json()["total"] == 2
    assert first.json()["cached"] is False

    second = client.get("/admin/users", headers=admin_headers)
    assert second.json()["cached"] is True
    assert len(user_cache) == 1

    client.post(f"/admin/users/{patient.id}/lock", headers=admin_headers)
    assert len(user_cache) == 0
    third = client.get("/admin/users", headers=admin_headers)
    assert third.json()["cached"] is False
    states = {item["email"]: item["state"] for item in third.json()["items"]}
    assert states["patient@example.com"] == "locked"


def test_listing_filter_and_paging(client, make_user, admin_headers):
    make_user(email="ana@example.com", full_name="Ana Lima")
    make_user(email="bruno@example.com", full_name="Bruno Costa")

    filtered = client.get("/admin/users", params={"q": "LIMA"}, headers=admin_headers).json()
    assert [item["email"] for item in filtered["items"]] == ["ana@example.com"]

    paged = client.get("/admin/users", params={"page": 2, "page_size": 2}, headers=admin_headers).json()
    assert paged["total"] == 3
    assert len(paged["items"]) == 1

    assert client.get("/admin/users", params={"page": 0}, headers=admin_headers).status_code == 400


def test_force_logout_outdates_tokens(client, make_user, admin_headers, db_session):
    patient = make_user(email="patient@example.com")
    tokens = _token(client, "patient@example.com", remember=True)

    response = client.post(f"/admin/users/{patient.id}/force-logout", headers=admin_headers)
    assert response.status_code == 200
    assert response.json() == {"ok": True, "sessions_revoked": 1}

    me = client.get("/auth/me", headers=bearer(tokens["access_token"]))
    assert me.status_code == 401
    assert me.json()["error"] == "Token outdated"
    assert client.post("/auth/refresh", json={"refresh_token": tokens["refresh_token"]}).status_code == 401
    assert db_session.query(AuditEvent).filter_by(action="admin.force_logout").count() == 1


def test_role_change(client, make_user, admin_headers):
    patient = make_user(email="patient@example.com")
    old_token = _token(client, "patient@example.com")["access_token"]

    response = client.patch(f"/admin/users/{patient.id}/role", json={"role": "nutri"}, headers=admin_headers)
    assert response.status_code == 200
    assert response.json()["role"] == "nutri"

    assert client.get("/auth/me", headers=bearer(old_token)).status_code == 401
    new_claims = client.post("/auth/introspect", json={"token": _token(client, "patient@example.com")["access_token"]})
    assert new_claims.json()["payload"]["role"] == "nutri"

    invalid = client.patch(f"/admin/users/{patient.id}/role", json={"role": "superuser"}, headers=admin_headers)
    assert invalid.status_code == 400


def test_lock_blocks_login_until_unlocked(client, make_user, admin_headers):
    patient = make_user(email="patient@example.com")

    locked = client.post(f"/admin/users/{patient.id}/lock", headers=admin_headers)
    assert locked.json()["state"] == "locked"

    response = client.post("/auth/login", json={"email": "patient@example.com", "password": STRONG_PASSWORD})
    assert response.status_code == 403
    assert response.json()["error"] == "Account is locked"

    unlocked = client.post(f"/admin/users/{patient.id}/unlock", headers=admin_headers)
    assert unlocked.json()["state"] == "active"
    assert _token(client, "patient@example.com")["access_token"]


def test_admin_cannot_lock_self_and_unknown_user_is_404(client, make_user, admin_headers):
    me = client.get("/auth/me", headers=admin_headers).json()
    assert client.post(f"/admin/users/{me['id']}/lock", headers=admin_headers).status_code == 400
    assert client.post("/admin/users/does-not-exist/force-logout", headers=admin_headers).status_code == 404


def test_self_service_registration_waits_for_cache_expiry(client, admin_headers, user_cache, outbox):
    assert client.get("/admin/users", headers=admin_headers).json()["total"] == 1

    client.post(
        "/auth/register",
        json={
            "email": "new@example.com",
            "password": STRONG_PASSWORD,
            "full_name": "Nova Paciente",
            "phone": "(11) 98765-4321",
            "birth_date": "1991-02-03",
        },
    )
    stale = client.get("/admin/users", headers=admin_headers).json()
    assert stale["cached"] is True
    assert stale["total"] == 1

    user_cache.invalidate()
    fresh = client.get("/admin/users", headers=admin_headers).json()
    assert fresh["total"] == 2
