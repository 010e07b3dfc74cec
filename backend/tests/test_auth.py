import json

import httpx
import pytest
from sqlalchemy import select

from portal.api.api_v1.endpoints.auth import resolve_role_redirect
from portal.models.admin import AdminLoginCode
from portal.services.supabase import AuthUser, SupabaseAuthClient, get_auth_client
from tests.factories import ADMIN_EMAIL, OWNER_EMAIL, OWNER_USER_ID, create_admin, create_merchant

ORIGIN = "http://testserver"


@pytest.fixture
def supabase_auth(client):
    """只接受 token_hash=good 的 OTP 校验和 auth_code=good 的 PKCE 交换"""
    from portal.main import app

    def handler(request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        verified = request.url.path.endswith("/verify") and payload.get("token_hash") == "good"
        exchanged = request.url.path.endswith("/token") and payload.get("auth_code") == "good"
        if verified or exchanged:
            return httpx.Response(200, json={
                "access_token": "access-1",
                "refresh_token": "refresh-1",
                "expires_in": 3600,
                "user": {"id": OWNER_USER_ID, "email": OWNER_EMAIL},
            })
        return httpx.Response(403, json={"error": "otp_expired"})

    app.dependency_overrides[get_auth_client] = lambda: SupabaseAuthClient(
        "https://supabase.test", "anon-key", transport=httpx.MockTransport(handler)
    )


# ==================== 跳转 ====================

@pytest.mark.parametrize("params, location", [
    ({}, "/login?error=auth_failed"),
    ({"next": "/admin"}, "/admin/login?error=auth_failed"),
    ({"next": "/auth/reset-password"}, "/forgot-password?error=expired"),
])
async def test_confirm_without_credentials(client, params, location):
    response = await client.get("/auth/confirm", params=params)

    assert response.status_code == 307
    assert response.headers["location"] == ORIGIN + location


async def test_confirm_expired_recovery_link(client, supabase_auth):
    response = await client.get("/auth/confirm", params={"token_hash": "stale", "type": "recovery"})

    assert response.headers["location"] == ORIGIN + "/forgot-password?error=expired"


async def test_confirm_recovery_goes_to_reset_password(client, supabase_auth):
    response = await client.get("/auth/confirm", params={"token_hash": "good", "type": "recovery"})

    assert response.headers["location"] == ORIGIN + "/auth/reset-password"
    assert response.cookies.get("sb-access-token") == "access-1"


async def test_confirm_sends_merchant_to_dashboard(client, db, supabase_auth):
    await create_merchant(db)

    response = await client.get("/auth/confirm", params={"token_hash": "good", "type": "magiclink", "next": "/admin"})

    assert response.headers["location"] == ORIGIN + "/dashboard"


async def test_confirm_without_account(client, supabase_auth):
    response = await client.get("/auth/confirm", params={"token_hash": "good", "type": "email"})

    assert response.headers["location"] == ORIGIN + "/login?error=no_account"


async def test_callback_redirects(client):
    bare = await client.get("/auth/callback")
    assert bare.headers["location"] == ORIGIN + "/admin/login"

    recovery = await client.get("/auth/callback", params={"token_hash": "abc", "type": "recovery"})
    assert recovery.headers["location"] == ORIGIN + "/auth/reset-password?token_hash=abc&type=recovery"


async def test_role_redirect_prefers_requested_area(db):
    await create_admin(db, email=OWNER_EMAIL)
    await create_merchant(db)
    user = AuthUser(id=OWNER_USER_ID, email=OWNER_EMAIL)

    assert await resolve_role_redirect(db, user, "/admin") == "/admin"
    assert await resolve_role_redirect(db, user, "/dashboard") == "/dashboard"
    assert await resolve_role_redirect(db, AuthUser(id="nobody", email="x@y.com"), "/dashboard") == "/login?error=no_account"


# ==================== 备用登录码 ====================

async def test_backup_code_rejects_unknown_email(client):
    response = await client.post("/api/v1/admin/send-backup-code", json={"email": "intruder@evil.com"})

    assert response.status_code == 403


async def test_backup_code_login_flow(client, db, outbox):
    await create_admin(db)

    sent = await client.post("/api/v1/admin/send-backup-code", json={"email": ADMIN_EMAIL.upper()})
    assert sent.status_code == 200
    assert outbox[0]["to"] == [ADMIN_EMAIL]
    code = (await db.execute(
        select(AdminLoginCode.code).where(AdminLoginCode.email == ADMIN_EMAIL, AdminLoginCode.used.is_(False))
    )).scalar()
    assert len(code) == 8

    wrong_code = str((int(code) + 1) % 10 ** 8).zfill(8)
    wrong = await client.post("/api/v1/admin/verify-backup-code", json={"email": ADMIN_EMAIL, "code": wrong_code})
    assert wrong.status_code == 401

    verified = await client.post("/api/v1/admin/verify-backup-code", json={"email": ADMIN_EMAIL, "code": code})
    assert verified.status_code == 200
    token = verified.json()["sessionToken"]
    assert verified.cookies.get("admin_backup_session") == token

    me = await client.get("/api/v1/admin/me")
    assert me.json()["email"] == ADMIN_EMAIL
    assert me.json()["via"] == "backup_session"

    session = await client.get("/api/v1/admin/validate-backup-session")
    assert session.json()["valid"] is True

    reused = await client.post("/api/v1/admin/verify-backup-code", json={"email": ADMIN_EMAIL, "code": code})
    assert reused.status_code == 401

    await client.post("/api/v1/admin/logout-backup-session")
    stale = await client.get("/api/v1/admin/validate-backup-session", headers={"cookie": f"admin_backup_session={token}"})
    assert stale.status_code == 401


async def test_backup_code_is_rate_limited(client, db):
    await create_admin(db)

    statuses = [
        (await client.post("/api/v1/admin/send-backup-code", json={"email": ADMIN_EMAIL})).status_code
        for _ in range(6)
    ]

    assert statuses == [200] * 5 + [429]


@pytest.mark.parametrize("next_path", ["@evil.example/phish", "//evil.example/phish", "https://evil.example", "/\\evil.example"])
async def test_confirm_ignores_offsite_next(client, db, supabase_auth, next_path):
    await create_merchant(db)

    response = await client.get("/auth/confirm", params={"token_hash": "good", "type": "magiclink", "next": next_path})

    assert response.headers["location"] == ORIGIN + "/dashboard"


async def test_confirm_keeps_onsite_next(client, supabase_auth):
    response = await client.get("/auth/confirm", params={"token_hash": "good", "type": "magiclink", "next": "/dashboard/orders"})

    assert response.headers["location"] == ORIGIN + "/dashboard/orders"


async def test_callback_ignores_offsite_next(client, supabase_auth):
    response = await client.get("/auth/callback", params={"code": "good", "next": "@evil.example"})

    assert response.headers["location"] == ORIGIN + "/admin"
    assert response.cookies.get("sb-access-token") == "access-1"
