import json
import os
from typing import Any, AsyncGenerator, Dict, List

import httpx
import pytest
import pytest_asyncio
import resend
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# 导入应用之前先设置测试环境
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["MERCURY_WEBHOOK_SECRET"] = "mercury-webhook-secret"
os.environ["SUPABASE_URL"] = "https://supabase.test"
os.environ["RESEND_API_KEY"] = ""

from portal.core.rate_limit import reset_rate_limits  # noqa: E402
from portal.db.base import Base  # noqa: E402
from portal.services.email import EmailClient  # noqa: E402
from portal.services.mercury import MercuryClient, clear_account_id_cache  # noqa: E402
from portal.services.shipstation import ShipStationClient  # noqa: E402
from portal.services.supabase import AuthUser, SupabaseStorageClient  # noqa: E402


class AuthState:
    """模拟 Supabase 登录态，get_current_user 直接返回这里的用户"""

    def __init__(self):
        self.user = None

    def login(self, user_id: str, email: str) -> AuthUser:
        self.user = AuthUser(id=user_id, email=email)
        return self.user

    def logout(self) -> None:
        self.user = None


class MercuryStub:
    """内存版 Mercury API：记录请求，按路径返回预设数据"""

    def __init__(self):
        self.invoices: Dict[str, str] = {}
        self.requests: List[tuple] = []
        self.fail_cancel = False

    def set_status(self, invoice_id: str, status: str) -> None:
        self.invoices[invoice_id] = status

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.replace("/api/v1", "", 1)
        self.requests.append((request.method, path))
        body = json.loads(request.content) if request.content else None

        if request.method == "POST" and path == "/ar/customers":
            return httpx.Response(200, json={"id": f"cust-{len(self.requests)}", "name": body["name"]})
        if request.method == "POST" and path == "/ar/invoices":
            invoice_id = f"inv-{len(self.invoices) + 1}"
            self.invoices[invoice_id] = "Unpaid"
            return httpx.Response(200, json={
                "id": invoice_id,
                "slug": f"slug-{invoice_id}",
                "invoiceNumber": f"INV-{len(self.invoices):04d}",
                "status": "Unpaid",
                "amount": float(body["lineItems"][0]["unitPrice"]),
            })
        if path.startswith("/ar/invoices/") and path.endswith("/cancel"):
            if self.fail_cancel:
                return httpx.Response(400, json={"error": "cannot cancel"})
            invoice_id = path.split("/")[3]
            self.invoices[invoice_id] = "Cancelled"
            return httpx.Response(200, json={"id": invoice_id, "status": "Cancelled"})
        if request.method == "GET" and path.startswith("/ar/invoices/"):
            invoice_id = path.split("/")[3]
            if invoice_id not in self.invoices:
                return httpx.Response(404, json={"error": "not found"})
            return httpx.Response(200, json={"id": invoice_id, "status": self.invoices[invoice_id]})
        if request.method == "GET" and path.startswith("/account/"):
            return httpx.Response(200, json={
                "id": "acct-1",
                "name": "Operating Checking",
                "status": "active",
                "type": "checking",
                "availableBalance": 12500.5,
                "currentBalance": 13000.0,
            })
        return httpx.Response(404, json={"error": f"unexpected {request.method} {path}"})


# ==================== 数据库 ====================

@pytest_asyncio.fixture(name="engine")
async def engine_fixture():
    """每个用例一份内存数据库"""
    import portal.models  # noqa: F401

    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture(name="db")
async def db_fixture(engine) -> AsyncGenerator[AsyncSession, None]:
    session_maker = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_maker() as session:
        yield session


@pytest.fixture(autouse=True)
def clear_process_state():
    reset_rate_limits()
    clear_account_id_cache()
    yield
    reset_rate_limits()


# ==================== 外部服务 ====================

@pytest.fixture(name="auth")
def auth_fixture() -> AuthState:
    return AuthState()


@pytest.fixture(name="outbox")
def outbox_fixture() -> List[Dict[str, Any]]:
    return []


@pytest.fixture(name="email_client")
def email_client_fixture(outbox, monkeypatch) -> EmailClient:
    """resend.Emails.send 换成写入 outbox"""

    def fake_send(params):
        outbox.append(dict(params))
        return {"id": f"email-{len(outbox)}"}

    monkeypatch.setattr(resend.Emails, "send", fake_send)
    return EmailClient("re_test", "LabSupply <noreply@labsupply.com>")


@pytest.fixture(name="storage_requests")
def storage_requests_fixture() -> List[tuple]:
    return []


@pytest.fixture(name="storage_client")
def storage_client_fixture(storage_requests) -> SupabaseStorageClient:
    def handler(request: httpx.Request) -> httpx.Response:
        storage_requests.append((request.method, request.url.path))
        if "/object/sign/" in request.url.path:
            return httpx.Response(200, json={"signedURL": "/object/sign/signed?token=abc"})
        return httpx.Response(200, json={"Key": request.url.path})

    return SupabaseStorageClient("https://supabase.test", "service-key", transport=httpx.MockTransport(handler))


@pytest.fixture(name="mercury_stub")
def mercury_stub_fixture() -> MercuryStub:
    return MercuryStub()


@pytest.fixture(name="mercury_client")
def mercury_client_fixture(mercury_stub) -> MercuryClient:
    return MercuryClient("mercury-token", "acct-1", transport=httpx.MockTransport(mercury_stub.handler), max_retries=0)


# ==================== HTTP 客户端 ====================

@pytest_asyncio.fixture(name="client")
async def client_fixture(
    db: AsyncSession,
    auth: AuthState,
    email_client: EmailClient,
    storage_client: SupabaseStorageClient,
    mercury_client: MercuryClient,
) -> AsyncGenerator[AsyncClient, None]:
    """覆盖依赖后的应用客户端（不触发 lifespan）"""
    from portal.core.deps import get_current_user, get_db
    from portal.main import app
    from portal.services.email import get_email_client
    from portal.services.mercury import get_mercury_client
    from portal.services.shipstation import get_shipstation_client
    from portal.services.supabase import get_storage_client

    async def get_db_override() -> AsyncGenerator[AsyncSession, None]:
        yield db

    app.dependency_overrides[get_db] = get_db_override
    app.dependency_overrides[get_current_user] = lambda: auth.user
    app.dependency_overrides[get_email_client] = lambda: email_client
    app.dependency_overrides[get_storage_client] = lambda: storage_client
    app.dependency_overrides[get_mercury_client] = lambda: mercury_client
    app.dependency_overrides[get_shipstation_client] = lambda: ShipStationClient("", "")

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as client:
        yield client

    app.dependency_overrides.clear()
