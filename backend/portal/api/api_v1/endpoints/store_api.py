"""
店铺插件 API

连接码换取凭证后，店铺的每个请求都带签名头：
    x-store-id / x-timestamp（毫秒）/ x-nonce / x-signature
签名算法见 core.security。
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, Request, Response
from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from portal.core.config import settings
from portal.core.deps import get_db
from portal.core.errors import ApiError, Errors
from portal.core.security import generate_store_secret, hash_secret, normalize_connect_code, verify_signature
from portal.models.merchant import Merchant, MerchantStatus
from portal.models.order import Order
from portal.models.store import ConnectCode, Store, StoreSecret, StoreStatus
from portal.schemas.common import build_pagination
from portal.schemas.store_api import ConnectExchangeRequest, StoreOrderCancel, StoreOrderCreate, StoreOrderResponse
from portal.services.audit import create_audit_event
from portal.services.order_flow import cancel_order, ingest_store_order, load_order

logger = logging.getLogger(__name__)

connect_router = APIRouter()
orders_router = APIRouter()


@dataclass
class StoreContext:
    """已通过签名校验的店铺"""
    store: Store
    body: bytes

    @property
    def store_id(self) -> str:
        return self.store.id

    @property
    def merchant_id(self) -> str:
        return self.store.merchant_id


async def verify_store_request(request: Request, db: AsyncSession = Depends(get_db)) -> StoreContext:
    store_id = request.headers.get("x-store-id")
    timestamp = request.headers.get("x-timestamp")
    nonce = request.headers.get("x-nonce")
    signature = request.headers.get("x-signature")
    if not store_id or not timestamp or not nonce or not signature:
        raise ApiError("MISSING_AUTH_HEADERS", "Missing required authentication headers", 401)

    body = await request.body()

    store = await db.get(Store, store_id)
    if not store:
        raise ApiError("STORE_NOT_FOUND", "Store not found", 404)
    if store.status != StoreStatus.CONNECTED:
        raise Errors.store_disconnected()

    secret_row = (await db.execute(
        select(StoreSecret)
        .where(StoreSecret.store_id == store_id, StoreSecret.is_active.is_(True))
        .order_by(StoreSecret.created_at.desc())
    )).scalars().first()
    if not secret_row or not secret_row.secret_plaintext:
        raise ApiError("SECRET_LOOKUP_FAILED", "Failed to verify store credentials", 500)

    valid, error = verify_signature(store_id, timestamp, nonce, body, signature, secret_row.secret_plaintext)
    if not valid:
        logger.warning(f"⚠️ 店铺签名校验失败 store={store_id}: {error}")
        if error == "Request timestamp expired":
            raise Errors.signature_expired()
        raise Errors.signature_invalid(error or "Invalid signature")

    return StoreContext(store=store, body=body)


# ==================== 连接 ====================

@connect_router.post("/connect/exchange")
async def exchange_connect_code(
    *,
    payload: ConnectExchangeRequest,
    db: AsyncSession = Depends(get_db),
) -> Any:
    """连接码换取 store_id + 签名密钥（密钥只返回这一次）"""
    code = normalize_connect_code(payload.connect_code)
    connect_code = (await db.execute(
        select(ConnectCode).where(
            ConnectCode.code == code,
            ConnectCode.used_at.is_(None),
            ConnectCode.expires_at > datetime.utcnow(),
        )
    )).scalars().first()
    if not connect_code:
        raise Errors.connect_code_invalid()

    merchant = await db.get(Merchant, connect_code.merchant_id)
    if not merchant or merchant.status != MerchantStatus.ACTIVE:
        raise ApiError("MERCHANT_INACTIVE", "Merchant account is not active", 400)

    store = Store(
        merchant_id=merchant.id,
        type="woocommerce",
        name=payload.store_name,
        url=payload.store_url,
        status=StoreStatus.CONNECTED,
        currency=payload.currency or "USD",
        timezone=payload.timezone,
        woo_version=payload.woo_version,
    )
    db.add(store)
    await db.flush()

    secret = generate_store_secret()
    db.add(StoreSecret(store_id=store.id, secret_hash=hash_secret(secret), secret_plaintext=secret, is_active=True))

    connect_code.used_at = datetime.utcnow()
    connect_code.store_id = store.id

    await create_audit_event(
        db, "store.connected", "store", store.id,
        merchant_id=merchant.id,
        metadata={"store_url": payload.store_url, "store_name": payload.store_name, "woo_version": payload.woo_version},
    )
    await db.commit()
    logger.info(f"🔗 店铺已连接: {payload.store_name} merchant={merchant.id}")
    return {
        "store_id": store.id,
        "store_secret": secret,
        "api_base_url": settings.API_BASE_URL,
    }


# ==================== 订单 ====================

@orders_router.post("", status_code=201)
async def create_store_order(
    *,
    payload: StoreOrderCreate,
    response: Response,
    db: AsyncSession = Depends(get_db),
    context: StoreContext = Depends(verify_store_request),
) -> Any:
    """店铺推送订单；同一 woo_order_id 重复推送返回原订单（200）"""
    result = await ingest_store_order(db, context.store, payload)
    result.pop("order")
    if result["is_duplicate"]:
        response.status_code = 200
        return result

    await db.commit()
    logger.info(f"📦 店铺新订单: store={context.store_id} woo={payload.woo_order_id} status={result['status']}")
    return result


@orders_router.get("")
async def list_store_orders(
    *,
    db: AsyncSession = Depends(get_db),
    context: StoreContext = Depends(verify_store_request),
    status: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
) -> Any:
    conditions = [Order.store_id == context.store_id]
    if status:
        conditions.append(Order.status == status)

    total = (await db.execute(select(func.count(Order.id)).where(and_(*conditions)))).scalar() or 0
    orders = (await db.execute(
        select(Order)
        .options(selectinload(Order.items))
        .where(and_(*conditions))
        .order_by(Order.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )).scalars().all()
    return {
        "data": [StoreOrderResponse.model_validate(o) for o in orders],
        "pagination": build_pagination(page, limit, total),
    }


async def _get_store_order(db: AsyncSession, order_id: str, context: StoreContext) -> Order:
    order = await load_order(db, order_id, store_id=context.store_id)
    if not order:
        raise ApiError("ORDER_NOT_FOUND", "Order not found", 404)
    return order


@orders_router.get("/{order_id}")
async def get_store_order(
    order_id: str,
    *,
    db: AsyncSession = Depends(get_db),
    context: StoreContext = Depends(verify_store_request),
) -> Any:
    order = await _get_store_order(db, order_id, context)
    data = StoreOrderResponse.model_validate(order).model_dump()
    data["shipments"] = [
        {
            "id": s.id,
            "status": s.status,
            "carrier": s.carrier,
            "tracking_number": s.tracking_number,
            "tracking_url": s.tracking_url,
            "shipped_at": s.shipped_at,
        }
        for s in order.shipments
    ]
    return data


@orders_router.post("/{order_id}/cancel")
async def cancel_store_order(
    order_id: str,
    *,
    payload: Optional[StoreOrderCancel] = None,
    db: AsyncSession = Depends(get_db),
    context: StoreContext = Depends(verify_store_request),
) -> Any:
    """店铺取消订单，已预留的资金与库存一并释放"""
    payload = payload or StoreOrderCancel()
    order = await _get_store_order(db, order_id, context)
    await cancel_order(db, order, payload.reason, actor_email=f"store:{context.store_id}")
    await db.commit()
    logger.info(f"🚫 店铺取消订单: store={context.store_id} order={order.id}")
    return {"success": True, "status": order.status}
