"""
Mercury 银行 API 客户端（应收发票 + 账户查询）

- Bearer token，30 秒超时
- 最多重试 3 次，指数退避（1s 起，附加最多 30% 抖动）
- 4xx（429 除外）不重试
- 收款账户ID：环境变量优先，否则自动发现第一个 active checking 账户并缓存
"""

import asyncio
import logging
import random
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional

import httpx

from portal.core.config import settings
from portal.services.errors import MercuryError

logger = logging.getLogger(__name__)

MERCURY_API_BASE = "https://api.mercury.com/api/v1"
MERCURY_REQUEST_TIMEOUT_SECONDS = 30.0
MERCURY_MAX_RETRIES = 3
MERCURY_RETRY_BASE_DELAY_SECONDS = 1.0

# 自动发现的收款账户ID（进程级缓存）
_cached_account_id: Optional[str] = None


def clear_account_id_cache() -> None:
    global _cached_account_id
    _cached_account_id = None


def set_account_id(account_id: str) -> None:
    global _cached_account_id
    _cached_account_id = account_id


class MercuryClient:
    def __init__(
        self,
        api_token: str,
        account_id: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        max_retries: int = MERCURY_MAX_RETRIES,
        retry_base_delay: float = MERCURY_RETRY_BASE_DELAY_SECONDS,
    ):
        self.api_token = api_token
        self.account_id = account_id
        self._transport = transport
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay

    @property
    def configured(self) -> bool:
        return bool(self.api_token)

    async def _request(self, method: str, path: str, body: Any = None, params: Optional[Dict[str, Any]] = None) -> Any:
        if not self.api_token:
            raise MercuryError("MERCURY_API_TOKEN environment variable is not set")

        headers = {"Authorization": f"Bearer {self.api_token}", "Accept": "application/json"}
        last_error: Optional[MercuryError] = None

        async with httpx.AsyncClient(
            base_url=MERCURY_API_BASE,
            headers=headers,
            timeout=MERCURY_REQUEST_TIMEOUT_SECONDS,
            transport=self._transport,
        ) as client:
            for attempt in range(self.max_retries + 1):
                try:
                    response = await client.request(method, path, json=body, params=params)
                except httpx.TimeoutException:
                    last_error = MercuryError(
                        f"Mercury API timeout after {MERCURY_REQUEST_TIMEOUT_SECONDS}s [{method} {path}]",
                        status_code=408,
                    )
                except httpx.HTTPError as e:
                    last_error = MercuryError(f"Mercury API network error: {e} [{method} {path}]")
                else:
                    if response.is_success:
                        if response.status_code == 204 or not response.content:
                            return None
                        return response.json()

                    try:
                        error_body = response.json()
                    except ValueError:
                        error_body = response.text
                    error = MercuryError(
                        f"Mercury API error: {response.status_code} [{method} {path}]",
                        status_code=response.status_code,
                        response_body=error_body,
                    )
                    if 400 <= response.status_code < 500 and response.status_code != 429:
                        raise error
                    last_error = error

                if attempt < self.max_retries:
                    delay = self.retry_base_delay * (2 ** attempt)
                    delay += random.random() * delay * 0.3
                    logger.warning(f"Mercury API 重试 {attempt + 1}/{self.max_retries}: {method} {path}，{delay:.2f}s 后")
                    await asyncio.sleep(delay)

        raise last_error or MercuryError(f"Mercury API request failed after {self.max_retries} retries [{method} {path}]")

    # ---------- 客户 ----------

    async def create_customer(self, name: str, email: str, address: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return await self._request("POST", "/ar/customers", {"name": name, "email": email, "address": address})

    async def get_customer(self, customer_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/ar/customers/{customer_id}")

    async def list_customers(self, limit: Optional[int] = None, start_after: Optional[str] = None) -> Dict[str, Any]:
        params = {k: v for k, v in {"limit": limit, "start_after": start_after}.items() if v is not None}
        return await self._request("GET", "/ar/customers", params=params or None)

    # ---------- 发票 ----------

    async def create_invoice(
        self,
        customer_id: str,
        due_date: str,
        invoice_date: str,
        line_items: List[Dict[str, Any]],
        cc_emails: Optional[List[str]] = None,
        payer_memo: Optional[str] = None,
        send_email_option: str = "SendNow",
    ) -> Dict[str, Any]:
        account_id = await self.get_account_id()
        body = {
            "customerId": customer_id,
            "dueDate": due_date,
            "invoiceDate": invoice_date,
            "lineItems": line_items,
            "ccEmails": cc_emails or [],
            "payerMemo": payer_memo,
            "poNumber": None,
            "invoiceNumber": None,
            "sendEmailOption": send_email_option,
            "creditCardEnabled": False,
            "achDebitEnabled": True,
            "useRealAccountNumber": False,
            "destinationAccountId": account_id,
        }
        return await self._request("POST", "/ar/invoices", body)

    async def get_invoice(self, invoice_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/ar/invoices/{invoice_id}")

    async def list_invoices(self, limit: Optional[int] = None, start_after: Optional[str] = None, order: Optional[str] = None) -> Dict[str, Any]:
        params = {k: v for k, v in {"limit": limit, "start_after": start_after, "order": order}.items() if v is not None}
        return await self._request("GET", "/ar/invoices", params=params or None)

    async def cancel_invoice(self, invoice_id: str) -> Dict[str, Any]:
        return await self._request("POST", f"/ar/invoices/{invoice_id}/cancel")

    async def update_invoice(self, invoice_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("POST", f"/ar/invoices/{invoice_id}", updates)

    # ---------- 账户 ----------

    async def get_account_id(self) -> str:
        global _cached_account_id
        if self.account_id:
            return self.account_id
        if _cached_account_id:
            return _cached_account_id

        try:
            result = await self._request("GET", "/accounts")
        except MercuryError as e:
            logger.error(f"Mercury 账户自动发现失败: {e}")
            result = None

        accounts = (result or {}).get("accounts") or []
        checking = next(
            (a for a in accounts if a.get("type") == "checking" and a.get("status") == "active"),
            accounts[0] if accounts else None,
        )
        if checking:
            _cached_account_id = checking["id"]
            return checking["id"]

        raise MercuryError(
            "No Mercury account found. Set MERCURY_ACCOUNT_ID or ensure your Mercury organization has an active account."
        )

    async def get_account(self, account_id: Optional[str] = None) -> Dict[str, Any]:
        account_id = account_id or await self.get_account_id()
        return await self._request("GET", f"/account/{account_id}")

    async def get_all_accounts(self) -> Dict[str, Any]:
        return await self._request("GET", "/accounts")

    # ---------- Webhook ----------

    async def create_webhook(self, url: str, event_types: Optional[List[str]] = None) -> Dict[str, Any]:
        return await self._request("POST", "/webhooks", {"url": url, "eventTypes": event_types})

    async def get_webhooks(self) -> Dict[str, Any]:
        return await self._request("GET", "/webhooks")


def get_mercury_client() -> MercuryClient:
    return MercuryClient(settings.MERCURY_API_TOKEN, settings.MERCURY_ACCOUNT_ID or None)


# ==================== 工具函数 ====================

def get_payment_url(slug: Optional[str]) -> Optional[str]:
    if not slug:
        return None
    return f"https://app.mercury.com/pay/{slug}"


def cents_to_dollar_string(cents: int) -> str:
    """Mercury 金额使用美元字符串，如 1234 → "12.34" """
    return str((Decimal(cents) / Decimal(100)).quantize(Decimal("0.01")))


def dollars_to_cents(dollars: Any) -> int:
    return int((Decimal(str(dollars)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def format_mercury_date(value: date) -> str:
    return value.strftime("%Y-%m-%d")
