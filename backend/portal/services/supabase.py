"""
Supabase 认证与存储客户端（httpx）

只封装门户用到的几个接口，会话/PKCE 逻辑全部交给 Supabase：
- GET  /auth/v1/user                     读取当前用户
- POST /auth/v1/token?grant_type=pkce    用授权码换会话
- POST /auth/v1/verify                   校验 OTP（token_hash + type）
- POST /storage/v1/object/{bucket}/{path}
- DELETE /storage/v1/object/{bucket}
- POST /storage/v1/object/sign/{bucket}/{path}
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from portal.core.config import settings
from portal.services.errors import SupabaseError

logger = logging.getLogger(__name__)

AUTH_TIMEOUT_SECONDS = 10.0
STORAGE_TIMEOUT_SECONDS = 60.0

COA_BUCKET = "lot-coas"
MERCHANT_UPLOADS_BUCKET = "merchant-uploads"
MERCHANT_DOCUMENTS_BUCKET = "merchant-documents"


@dataclass
class AuthUser:
    id: str
    email: str
    user_metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "AuthUser":
        return cls(
            id=payload["id"],
            email=(payload.get("email") or "").lower().strip(),
            user_metadata=payload.get("user_metadata") or {},
        )


@dataclass
class AuthSession:
    access_token: str
    refresh_token: Optional[str]
    expires_in: Optional[int]
    user: Optional[AuthUser]

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "AuthSession":
        user = payload.get("user")
        return cls(
            access_token=payload.get("access_token", ""),
            refresh_token=payload.get("refresh_token"),
            expires_in=payload.get("expires_in"),
            user=AuthUser.from_payload(user) if user else None,
        )


class SupabaseAuthClient:
    """Supabase Auth（GoTrue）薄封装"""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=f"{self.base_url}/auth/v1",
            headers={"apikey": self.api_key, "Content-Type": "application/json"},
            timeout=AUTH_TIMEOUT_SECONDS,
            transport=self._transport,
        )

    async def get_user(self, access_token: str) -> Optional[AuthUser]:
        """令牌无效时返回 None"""
        if not access_token or not self.base_url:
            return None
        try:
            async with self._client() as client:
                response = await client.get("/user", headers={"Authorization": f"Bearer {access_token}"})
        except httpx.HTTPError as e:
            logger.error(f"Supabase getUser 网络错误: {e}")
            return None
        if response.status_code != 200:
            return None
        return AuthUser.from_payload(response.json())

    async def exchange_code_for_session(self, code: str, code_verifier: Optional[str] = None) -> AuthSession:
        payload = {"auth_code": code, "code_verifier": code_verifier or ""}
        return await self._session_request("/token", payload, params={"grant_type": "pkce"})

    async def verify_otp(self, token_hash: str, otp_type: str) -> AuthSession:
        return await self._session_request("/verify", {"token_hash": token_hash, "type": otp_type})

    async def _session_request(self, path: str, payload: Dict[str, Any], params: Optional[Dict[str, str]] = None) -> AuthSession:
        try:
            async with self._client() as client:
                response = await client.post(path, json=payload, params=params)
        except httpx.HTTPError as e:
            raise SupabaseError(f"Supabase auth network error on {path}: {e}")
        if response.status_code >= 400:
            raise SupabaseError(
                f"Supabase auth error {response.status_code} on {path}",
                status_code=response.status_code,
                response_body=response.text,
            )
        return AuthSession.from_payload(response.json())


class SupabaseStorageClient:
    """Supabase Storage（服务端密钥）"""

    def __init__(
        self,
        base_url: str,
        service_key: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.service_key = service_key
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=f"{self.base_url}/storage/v1",
            headers={"Authorization": f"Bearer {self.service_key}", "apikey": self.service_key},
            timeout=STORAGE_TIMEOUT_SECONDS,
            transport=self._transport,
        )

    async def upload(self, bucket: str, path: str, content: bytes, content_type: str, upsert: bool = True) -> str:
        try:
            async with self._client() as client:
                response = await client.post(
                    f"/object/{bucket}/{path}",
                    content=content,
                    headers={"Content-Type": content_type, "x-upsert": "true" if upsert else "false"},
                )
        except httpx.HTTPError as e:
            raise SupabaseError(f"Storage upload network error {bucket}/{path}: {e}")
        if response.status_code >= 400:
            raise SupabaseError(
                f"Storage upload failed {bucket}/{path}: {response.status_code}",
                status_code=response.status_code,
                response_body=response.text,
            )
        return path

    async def remove(self, bucket: str, paths: List[str]) -> None:
        try:
            async with self._client() as client:
                response = await client.request("DELETE", f"/object/{bucket}", json={"prefixes": paths})
        except httpx.HTTPError as e:
            raise SupabaseError(f"Storage remove network error {bucket}: {e}")
        if response.status_code >= 400:
            raise SupabaseError(
                f"Storage remove failed {bucket}: {response.status_code}",
                status_code=response.status_code,
                response_body=response.text,
            )

    async def create_signed_url(self, bucket: str, path: str, expires_in: int = 3600) -> str:
        try:
            async with self._client() as client:
                response = await client.post(f"/object/sign/{bucket}/{path}", json={"expiresIn": expires_in})
        except httpx.HTTPError as e:
            raise SupabaseError(f"Storage sign network error {bucket}/{path}: {e}")
        if response.status_code >= 400:
            raise SupabaseError(
                f"Storage sign failed {bucket}/{path}: {response.status_code}",
                status_code=response.status_code,
                response_body=response.text,
            )
        signed = response.json().get("signedURL", "")
        return f"{self.base_url}/storage/v1{signed}"


def get_auth_client() -> SupabaseAuthClient:
    return SupabaseAuthClient(settings.SUPABASE_URL, settings.SUPABASE_ANON_KEY)


def get_storage_client() -> SupabaseStorageClient:
    return SupabaseStorageClient(settings.SUPABASE_URL, settings.SUPABASE_SERVICE_ROLE_KEY)
