"""
订单流转服务

- 状态机：ORDER_TRANSITIONS / SHIPMENT_TRANSITIONS
- 店铺下单入库、资金预留（保留合规保证金）、待付款重试
- 取消、打包（批次分配）、退款
- 发货单、发货结算

状态更新使用乐观锁：UPDATE ... WHERE status = 原状态，影响行数为 0 视为并发冲突。
函数只 flush，事务由调用方提交。
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from portal.core.errors import ApiError, Errors
from portal.core.security import order_idempotency_key
from portal.models.billing import COMPLIANCE_RESERVE_CENTS
from portal.models.catalog import Inventory, Lot, MerchantProduct, Product
from portal.models.merchant import Merchant
from portal.models.order import Order, OrderItem, OrderStatus, OrderStatusHistory, Shipment, ShipmentStatus
from portal.models.store import Store
from portal.models.system import NotificationType
from portal.models.wallet import WalletAccount, WalletTransaction, WalletTransactionType
from portal.services.audit import create_audit_event
from portal.services.email import EmailClient, format_usd, order_awaiting_funds_email
from portal.services.errors import OrderTransitionError, ShipStationError
from portal.services.notifications import create_notification
from portal.services.pricing import effective_price_cents
from portal.services.shipstation import PackageDimensions, ShippingAddress, ShipStationClient, origin_address
from portal.services.wallet import (
    adjust_balance,
    adjust_reserved,
    available_for_orders,
    find_transaction_by_key,
    get_wallet,
)

logger = logging.getLogger(__name__)

SHIPPING_ESTIMATE_CENTS = 895
HANDLING_CENTS = 0

ORDER_TRANSITIONS: Dict[str, tuple] = {
    OrderStatus.RECEIVED: (OrderStatus.AWAITING_FUNDS, OrderStatus.FUNDED, OrderStatus.ON_HOLD_COMPLIANCE, OrderStatus.CANCELLED),
    OrderStatus.AWAITING_FUNDS: (OrderStatus.FUNDED, OrderStatus.ON_HOLD_PAYMENT, OrderStatus.CANCELLED),
    OrderStatus.ON_HOLD_PAYMENT: (OrderStatus.AWAITING_FUNDS, OrderStatus.FUNDED, OrderStatus.CANCELLED),
    OrderStatus.ON_HOLD_COMPLIANCE: (OrderStatus.RECEIVED, OrderStatus.CANCELLED),
    OrderStatus.FUNDED: (OrderStatus.RELEASED_TO_FULFILLMENT, OrderStatus.ON_HOLD_COMPLIANCE, OrderStatus.CANCELLED, OrderStatus.REFUNDED),
    OrderStatus.RELEASED_TO_FULFILLMENT: (OrderStatus.PICKING, OrderStatus.PACKED, OrderStatus.CANCELLED, OrderStatus.REFUNDED),
    OrderStatus.PICKING: (OrderStatus.PACKED, OrderStatus.RELEASED_TO_FULFILLMENT, OrderStatus.REFUNDED),
    OrderStatus.PACKED: (OrderStatus.SHIPPED, OrderStatus.PICKING, OrderStatus.REFUNDED),
    OrderStatus.SHIPPED: (OrderStatus.COMPLETE, OrderStatus.REFUNDED),
    OrderStatus.COMPLETE: (OrderStatus.REFUNDED,),
    OrderStatus.CANCELLED: (),
    OrderStatus.REFUNDED: (),
}

SHIPMENT_TRANSITIONS: Dict[str, tuple] = {
    ShipmentStatus.PENDING: (ShipmentStatus.LABEL_CREATED, ShipmentStatus.IN_TRANSIT, ShipmentStatus.FAILED),
    ShipmentStatus.LABEL_CREATED: (ShipmentStatus.PICKED_UP, ShipmentStatus.IN_TRANSIT, ShipmentStatus.FAILED),
    ShipmentStatus.PICKED_UP: (ShipmentStatus.IN_TRANSIT,),
    ShipmentStatus.IN_TRANSIT: (ShipmentStatus.DELIVERED, ShipmentStatus.FAILED, ShipmentStatus.RETURNED),
    ShipmentStatus.DELIVERED: (ShipmentStatus.RETURNED,),
    ShipmentStatus.FAILED: (ShipmentStatus.PENDING,),
    ShipmentStatus.RETURNED: (),
}

PACKABLE_STATUSES = (OrderStatus.RELEASED_TO_FULFILLMENT, OrderStatus.PICKING)
SHIPPABLE_STATUSES = (
    OrderStatus.FUNDED,
    OrderStatus.RELEASED_TO_FULFILLMENT,
    OrderStatus.PICKING,
    OrderStatus.PACKED,
)
REFUNDABLE_STATUSES = (
    OrderStatus.SHIPPED,
    OrderStatus.COMPLETE,
    OrderStatus.FUNDED,
    OrderStatus.PACKED,
    OrderStatus.RELEASED_TO_FULFILLMENT,
    OrderStatus.PICKING,
)
SETTLED_STATUSES = (OrderStatus.SHIPPED, OrderStatus.COMPLETE)


def can_transition_order(from_status: str, to_status: str) -> bool:
    return to_status in ORDER_TRANSITIONS.get(from_status, ())


def can_transition_shipment(from_status: str, to_status: str) -> bool:
    return to_status in SHIPMENT_TRANSITIONS.get(from_status, ())


def compliance_message() -> str:
    return f"Insufficient funds. {format_usd(COMPLIANCE_RESERVE_CENTS)} compliance reserve must be maintained."


async def load_order(db: AsyncSession, order_id: str, merchant_id: Optional[str] = None, store_id: Optional[str] = None) -> Optional[Order]:
    """加载订单及明细、发货单、商户"""
    query = select(Order).options(
        selectinload(Order.items),
        selectinload(Order.shipments),
        selectinload(Order.merchant),
    ).where(Order.id == order_id)
    if merchant_id:
        query = query.where(Order.merchant_id == merchant_id)
    if store_id:
        query = query.where(Order.store_id == store_id)
    result = await db.execute(query)
    return result.scalars().first()


async def transition_order(
    db: AsyncSession,
    order: Order,
    to_status: str,
    *,
    changed_by: Optional[str] = None,
    reason: Optional[str] = None,
    values: Optional[Dict[str, Any]] = None,
) -> Order:
    """按状态机流转订单（乐观锁）并写入历史"""
    from_status = order.status
    if not can_transition_order(from_status, to_status):
        raise OrderTransitionError(order.id, from_status, to_status)

    await db.flush()
    update_values = {"status": to_status, "updated_at": datetime.utcnow()}
    if values:
        update_values.update(values)

    result = await db.execute(
        update(Order)
        .where(Order.id == order.id, Order.status == from_status)
        .values(**update_values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise OrderTransitionError(order.id, from_status, to_status, reason="status changed concurrently")

    for key, value in update_values.items():
        setattr(order, key, value)

    db.add(OrderStatusHistory(
        order_id=order.id,
        from_status=from_status,
        to_status=to_status,
        changed_by=changed_by,
        reason=reason,
    ))
    logger.info(f"📦 订单状态: {order.id} {from_status} → {to_status}")
    return order


# ==================== 库存预留 ====================

async def _inventory_map(db: AsyncSession, product_ids: Iterable[str]) -> Dict[str, Inventory]:
    ids = [pid for pid in set(product_ids) if pid]
    if not ids:
        return {}
    result = await db.execute(select(Inventory).where(Inventory.product_id.in_(ids)))
    return {inv.product_id: inv for inv in result.scalars().all()}


async def find_inventory_shortage(db: AsyncSession, order: Order) -> Optional[str]:
    """返回第一个库存不足的商品ID，全部充足返回 None"""
    needed: Dict[str, int] = {}
    for item in order.items:
        if item.product_id:
            needed[item.product_id] = needed.get(item.product_id, 0) + item.qty
    inventory = await _inventory_map(db, needed.keys())
    for product_id, qty in needed.items():
        inv = inventory.get(product_id)
        available = inv.available if inv else 0
        if available < qty:
            return product_id
    return None


async def _change_inventory_reserved(db: AsyncSession, order: Order, sign: int) -> None:
    inventory = await _inventory_map(db, (item.product_id for item in order.items))
    for item in order.items:
        inv = inventory.get(item.product_id)
        if inv:
            inv.reserved = max(0, (inv.reserved or 0) + sign * item.qty)


def _reservation_transaction(wallet: WalletAccount, order: Order, transaction_type: str, amount_cents: int, key: str, description: str) -> WalletTransaction:
    """预留/释放流水（只动 reserved，不动余额）"""
    return WalletTransaction(
        merchant_id=order.merchant_id,
        wallet_id=wallet.id,
        type=transaction_type,
        amount_cents=amount_cents,
        balance_after_cents=wallet.balance_cents,
        reference_type="order",
        reference_id=order.id,
        description=description,
        idempotency_key=key,
    )


async def release_reservation(db: AsyncSession, order: Order, reason: str) -> None:
    """释放订单的资金与库存预留"""
    key = f"reservation-release-{order.id}"
    if await find_transaction_by_key(db, key):
        return
    wallet = await get_wallet(db, order.merchant_id, order.currency or "USD", lock=True)
    amount = order.total_estimate_cents or 0
    if wallet and amount:
        adjust_reserved(wallet, -amount)
        db.add(_reservation_transaction(
            wallet, order, WalletTransactionType.RESERVATION_RELEASE, amount, key,
            f"Reservation released for order {order.woo_order_number or order.id}: {reason}",
        ))
    await _change_inventory_reserved(db, order, -1)


# ==================== 下单与资金 ====================

async def ingest_store_order(db: AsyncSession, store: Store, data) -> Dict[str, Any]:
    """
    店铺下单（幂等）

    data 为 StoreOrderCreate；重复推送返回原订单并标记 is_duplicate。
    """
    key = order_idempotency_key(store.id, data.woo_order_id)
    existing = (await db.execute(select(Order).where(Order.idempotency_key == key))).scalars().first()
    wallet = await get_wallet(db, store.merchant_id, "USD")

    if existing:
        return {
            "order": existing,
            "supplier_order_id": existing.id,
            "status": existing.status,
            "is_duplicate": True,
            "wallet_balance_cents": wallet.balance_cents if wallet else 0,
            "is_funded": existing.status != OrderStatus.AWAITING_FUNDS,
        }

    skus = [item.supplier_sku.strip().upper() for item in data.items]
    product_rows = await db.execute(select(Product).where(Product.sku.in_(skus), Product.active.is_(True)))
    products = {p.sku: p for p in product_rows.scalars().all()}
    if not products:
        raise ApiError("PRODUCTS_NOT_FOUND", "One or more products not found", 400)

    whitelist_rows = await db.execute(
        select(MerchantProduct).where(
            MerchantProduct.merchant_id == store.merchant_id,
            MerchantProduct.allowed.is_(True),
            MerchantProduct.product_id.in_([p.id for p in products.values()]),
        )
    )
    whitelist = {mp.product_id: mp for mp in whitelist_rows.scalars().all()}
    merchant = await db.get(Merchant, store.merchant_id)
    adjustment_percent = merchant.price_adjustment_percent if merchant else 0

    items: List[OrderItem] = []
    subtotal = 0
    for item, sku in zip(data.items, skus):
        product = products.get(sku)
        if not product:
            raise ApiError("PRODUCT_NOT_FOUND", f"Product not found: {item.supplier_sku}", 400)
        mp = whitelist.get(product.id)
        if not mp:
            raise ApiError("PRODUCT_NOT_WHITELISTED", f"Product not available: {item.supplier_sku}", 400)

        unit_price = effective_price_cents(product, mp.wholesale_price_cents, adjustment_percent)
        subtotal += unit_price * item.qty
        items.append(OrderItem(
            product_id=product.id,
            sku=product.sku,
            name=item.name or product.name,
            qty=item.qty,
            unit_price_cents=unit_price,
        ))

    total_estimate = subtotal + HANDLING_CENTS + SHIPPING_ESTIMATE_CENTS
    order = Order(
        store_id=store.id,
        merchant_id=store.merchant_id,
        woo_order_id=str(data.woo_order_id),
        woo_order_number=data.woo_order_number,
        status=OrderStatus.RECEIVED,
        currency=data.currency or "USD",
        subtotal_cents=subtotal,
        handling_cents=HANDLING_CENTS,
        shipping_estimate_cents=SHIPPING_ESTIMATE_CENTS,
        total_estimate_cents=total_estimate,
        shipping_address=data.shipping_address.model_dump(),
        billing_address=data.billing_address.model_dump() if data.billing_address else None,
        customer_email=data.customer_email,
        customer_note=data.customer_note,
        idempotency_key=key,
        items=items,
    )
    db.add(order)
    await db.flush()
    db.add(OrderStatusHistory(order_id=order.id, from_status=None, to_status=OrderStatus.RECEIVED, changed_by=f"store:{store.id}"))

    balance = wallet.balance_cents if wallet else 0
    available = available_for_orders(wallet)
    can_fund = available >= total_estimate

    if can_fund:
        await process_received_order(db, order)
    else:
        await transition_order(db, order, OrderStatus.AWAITING_FUNDS, changed_by="system", reason="Insufficient funds", values={
            "extra_data": {
                "compliance_blocked": True,
                "required_balance": total_estimate + COMPLIANCE_RESERVE_CENTS,
                "current_balance": balance,
            },
        })

    await create_audit_event(
        db, "order.created", "order", order.id,
        merchant_id=store.merchant_id,
        metadata={
            "woo_order_id": str(data.woo_order_id),
            "item_count": len(items),
            "total_estimate_cents": total_estimate,
            "compliance_reserve_cents": COMPLIANCE_RESERVE_CENTS,
            "is_funded": can_fund,
        },
    )

    return {
        "order": order,
        "supplier_order_id": order.id,
        "status": order.status,
        "is_duplicate": False,
        "estimated_total_cents": total_estimate,
        "wallet_balance_cents": balance,
        "available_after_reserve_cents": max(0, available),
        "compliance_reserve_cents": COMPLIANCE_RESERVE_CENTS,
        "is_funded": order.status == OrderStatus.FUNDED,
        "compliance_message": None if can_fund else compliance_message(),
    }


async def _fund_order(db: AsyncSession, order: Order, wallet: WalletAccount) -> None:
    amount = order.total_estimate_cents or 0
    key = f"reservation-{order.id}"
    adjust_reserved(wallet, amount)
    await _change_inventory_reserved(db, order, 1)
    transaction = _reservation_transaction(
        wallet, order, WalletTransactionType.RESERVATION, -amount, key,
        f"Reservation for order {order.woo_order_number or order.id}",
    )
    db.add(transaction)
    await db.flush()
    await transition_order(db, order, OrderStatus.FUNDED, changed_by="system", reason="Wallet reservation created", values={
        "funded_at": datetime.utcnow(),
        "wallet_reservation_id": transaction.id,
    })
    await create_audit_event(
        db, "order.funded", "order", order.id,
        merchant_id=order.merchant_id,
        metadata={"reserved_amount": amount},
    )


async def process_received_order(db: AsyncSession, order: Order, email_client: Optional[EmailClient] = None) -> str:
    """
    处理新订单：库存检查 → 资金预留

    - 库存不足 → ON_HOLD_COMPLIANCE
    - 可用余额（扣除合规保证金）足够 → FUNDED
    - 否则 → AWAITING_FUNDS 并通知商户
    """
    shortage = await find_inventory_shortage(db, order)
    if shortage:
        await transition_order(db, order, OrderStatus.ON_HOLD_COMPLIANCE, changed_by="system", reason="Insufficient inventory", values={
            "supplier_notes": f"Insufficient inventory for product {shortage}",
        })
        return order.status

    wallet = await get_wallet(db, order.merchant_id, order.currency or "USD", lock=True)
    available = available_for_orders(wallet)
    required = order.total_estimate_cents or 0

    if wallet and available >= required:
        await _fund_order(db, order, wallet)
        return order.status

    await transition_order(db, order, OrderStatus.AWAITING_FUNDS, changed_by="system", reason="Insufficient funds")
    await notify_awaiting_funds(db, order, required, available, email_client)
    return order.status


async def notify_awaiting_funds(
    db: AsyncSession,
    order: Order,
    required: int,
    available: int,
    email_client: Optional[EmailClient] = None,
) -> None:
    await create_notification(
        db, order.merchant_id, NotificationType.ORDER_AWAITING_FUNDS,
        "Order Awaiting Payment",
        f"Order requires funding. Available: {format_usd(max(0, available))}, Required: {format_usd(required)}",
        {"order_id": order.id},
    )
    if email_client is None:
        return
    merchant = await db.get(Merchant, order.merchant_id)
    if merchant:
        subject, body = order_awaiting_funds_email(
            merchant.display_name, order.woo_order_number or order.id, required, max(0, available),
        )
        await email_client.send_safely(merchant.billing_email or merchant.email, subject, body)


async def retry_awaiting_funds(db: AsyncSession, merchant_id: str) -> List[str]:
    """充值到账后，按下单顺序重试待付款订单，返回已预留的订单ID"""
    result = await db.execute(
        select(Order)
        .options(selectinload(Order.items))
        .where(Order.merchant_id == merchant_id, Order.status == OrderStatus.AWAITING_FUNDS)
        .order_by(Order.created_at.asc())
    )
    funded: List[str] = []
    for order in result.scalars().all():
        wallet = await get_wallet(db, merchant_id, order.currency or "USD", lock=True)
        if not wallet or available_for_orders(wallet) < (order.total_estimate_cents or 0):
            continue
        if await find_inventory_shortage(db, order):
            continue
        await _fund_order(db, order, wallet)
        funded.append(order.id)
    if funded:
        logger.info(f"✅ 待付款订单已预留: merchant={merchant_id} orders={funded}")
    return funded


# ==================== 取消 / 打包 / 退款 ====================

async def cancel_order(
    db: AsyncSession,
    order: Order,
    reason: Optional[str] = None,
    *,
    actor_user_id: Optional[str] = None,
    actor_email: Optional[str] = None,
) -> Order:
    if not can_transition_order(order.status, OrderStatus.CANCELLED):
        raise Errors.order_not_cancellable(order.status)

    previous = order.status
    if previous in OrderStatus.RESERVED:
        await release_reservation(db, order, reason or "cancelled")

    await transition_order(db, order, OrderStatus.CANCELLED, changed_by=actor_email or actor_user_id, reason=reason, values={
        "cancelled_at": datetime.utcnow(),
        "supplier_notes": f"Cancelled: {reason}" if reason else "Cancelled by merchant",
    })
    await create_audit_event(
        db, "order.cancelled", "order", order.id,
        merchant_id=order.merchant_id,
        actor_user_id=actor_user_id,
        actor_email=actor_email,
        old_values={"status": previous},
        new_values={"status": OrderStatus.CANCELLED},
        metadata={"reason": reason},
    )
    return order


async def pack_order(db: AsyncSession, order: Order, items: List[Dict[str, str]], actor_email: Optional[str] = None) -> Dict[str, Any]:
    """按批次打包：分配批次号，扣减批次数量与在库数量"""
    if not items:
        raise ApiError("VALIDATION_ERROR", "items array is required and must not be empty", 400)
    if order.status not in PACKABLE_STATUSES:
        raise ApiError(
            "ORDER_NOT_PACKABLE",
            f"Order status must be RELEASED_TO_FULFILLMENT or PICKING to pack. Current status: {order.status}",
            400,
        )

    order_items = {item.id: item for item in order.items}
    for entry in items:
        order_item = order_items.get(entry["order_item_id"])
        if not order_item:
            raise ApiError("ORDER_ITEM_NOT_FOUND", f"Order item {entry['order_item_id']} not found on this order", 400)

        lot = (await db.execute(
            select(Lot).where(Lot.lot_code == entry["lot_code"], Lot.product_id == order_item.product_id)
        )).scalars().first()
        if not lot:
            raise ApiError("LOT_NOT_FOUND", f'Lot "{entry["lot_code"]}" not found for product {order_item.product_id}', 400)

        order_item.lot_id = lot.id
        order_item.lot_code = lot.lot_code

        qty = order_item.qty or 1
        if lot.quantity is not None:
            lot.quantity = max(0, lot.quantity - qty)
        inventory = (await db.execute(select(Inventory).where(Inventory.product_id == order_item.product_id))).scalars().first()
        if inventory:
            inventory.on_hand = max(0, (inventory.on_hand or 0) - qty)

    await transition_order(db, order, OrderStatus.PACKED, changed_by=actor_email, reason="Order packed with lot assignments")
    await create_audit_event(
        db, "order.packed", "order", order.id,
        merchant_id=order.merchant_id,
        actor_email=actor_email,
        new_values={"items": items},
    )
    return {"orderId": order.id, "status": OrderStatus.PACKED, "items_packed": len(items)}


async def refund_order(db: AsyncSession, order: Order, reason: Optional[str] = None, actor_email: Optional[str] = None) -> Dict[str, Any]:
    reason = reason or "Admin refund"
    if order.status == OrderStatus.REFUNDED:
        raise ApiError("ORDER_ALREADY_REFUNDED", "Order is already refunded", 400)
    if order.status not in REFUNDABLE_STATUSES:
        raise ApiError(
            "ORDER_NOT_REFUNDABLE",
            f"Cannot refund order in {order.status} status. Allowed: {', '.join(REFUNDABLE_STATUSES)}",
            400,
        )

    amount = order.actual_total_cents or order.total_estimate_cents or 0
    if amount <= 0:
        raise ApiError("NOTHING_TO_REFUND", "No amount to refund", 400)

    wallet = await get_wallet(db, order.merchant_id, order.currency or "USD")
    if not wallet:
        raise ApiError("WALLET_NOT_FOUND", "Merchant wallet not found", 500)

    credited = 0
    if order.status in SETTLED_STATUSES:
        await adjust_balance(
            db, order.merchant_id, amount, WalletTransactionType.REFUND,
            reference_type="order",
            reference_id=order.id,
            description=f"Refund: {reason}",
            idempotency_key=f"refund-{order.id}",
            currency=order.currency or "USD",
        )
        credited = amount
    else:
        await release_reservation(db, order, reason)

    previous = order.status
    await transition_order(db, order, OrderStatus.REFUNDED, changed_by=actor_email, reason=reason, values={
        "refunded_at": datetime.utcnow(),
    })
    await create_audit_event(
        db, "order.refunded", "order", order.id,
        merchant_id=order.merchant_id,
        actor_email=actor_email,
        old_values={"status": previous},
        metadata={"reason": reason, "refund_amount_cents": amount, "wallet_credit_cents": credited},
    )
    return {
        "orderId": order.id,
        "status": OrderStatus.REFUNDED,
        "refundAmountCents": amount,
        "walletCreditCents": credited,
        "walletBalanceCents": wallet.balance_cents,
    }


# ==================== 发货 ====================

async def create_shipment(
    db: AsyncSession,
    order: Order,
    carrier: str,
    service: str,
    shipstation: Optional[ShipStationClient] = None,
    weight_oz: Optional[float] = None,
    actor_email: Optional[str] = None,
) -> Shipment:
    """创建发货单；已配置 ShipStation 时购买面单（失败保持 PENDING）"""
    if order.status not in SHIPPABLE_STATUSES:
        raise ApiError("ORDER_NOT_SHIPPABLE", f"Order in {order.status} status cannot be shipped", 400)

    shipment = Shipment(
        order_id=order.id,
        status=ShipmentStatus.PENDING,
        carrier=carrier,
        service=service,
        weight_oz=int(weight_oz) if weight_oz else None,
    )
    db.add(shipment)
    await db.flush()

    if shipstation is not None and shipstation.configured:
        parcel = PackageDimensions(weight=weight_oz or 16, unit="oz")
        try:
            label = await shipstation.create_label(
                origin_address(),
                ShippingAddress.from_order_address(order.shipping_address),
                parcel,
                carrier,
                service,
            )
        except ShipStationError as e:
            logger.error(f"❌ 面单购买失败: order={order.id}: {e}")
        else:
            shipment.status = ShipmentStatus.LABEL_CREATED
            shipment.tracking_number = label["tracking_number"]
            shipment.tracking_url = label["tracking_url"]
            shipment.label_storage_path = label["label_url"]
            shipment.rate_cents = label["rate_cents"]

    # FUNDED 需先放行到履约，再进入 PACKED
    if order.status == OrderStatus.FUNDED:
        await transition_order(db, order, OrderStatus.RELEASED_TO_FULFILLMENT, changed_by=actor_email, reason="Shipment created")
    if can_transition_order(order.status, OrderStatus.PACKED):
        await transition_order(db, order, OrderStatus.PACKED, changed_by=actor_email, reason="Shipment created")

    await create_audit_event(
        db, "shipment.created", "shipment", shipment.id,
        merchant_id=order.merchant_id,
        actor_email=actor_email,
        metadata={"order_id": order.id, "carrier": carrier, "service": service, "status": shipment.status},
    )
    return shipment


async def mark_shipped(
    db: AsyncSession,
    shipment: Shipment,
    order: Order,
    *,
    tracking_number: Optional[str] = None,
    tracking_url: Optional[str] = None,
    carrier: Optional[str] = None,
    actual_cost_cents: Optional[int] = None,
    actor_email: Optional[str] = None,
) -> Dict[str, Any]:
    """
    发货并结算

    实际金额 = 商品小计 + 实际运费（无则面单运费）；
    释放预估预留，按实际金额扣款（SETTLEMENT）。
    """
    if not can_transition_shipment(shipment.status, ShipmentStatus.IN_TRANSIT):
        raise ApiError("SHIPMENT_INVALID_TRANSITION", f"Cannot ship a shipment in {shipment.status} status", 400)
    if not can_transition_order(order.status, OrderStatus.SHIPPED):
        raise OrderTransitionError(order.id, order.status, OrderStatus.SHIPPED)

    now = datetime.utcnow()
    shipment.status = ShipmentStatus.IN_TRANSIT
    shipment.shipped_at = now
    if tracking_number:
        shipment.tracking_number = tracking_number
    if tracking_url:
        shipment.tracking_url = tracking_url
    if carrier:
        shipment.carrier = carrier
    if actual_cost_cents is not None:
        shipment.actual_cost_cents = actual_cost_cents

    shipping_cost = shipment.actual_cost_cents if shipment.actual_cost_cents is not None else (shipment.rate_cents or 0)
    estimated_total = order.total_estimate_cents or 0
    actual_total = order.items_subtotal_cents + shipping_cost

    wallet = await get_wallet(db, order.merchant_id, order.currency or "USD", lock=True)
    if wallet:
        adjust_reserved(wallet, -estimated_total)
    await _change_inventory_reserved(db, order, -1)
    await adjust_balance(
        db, order.merchant_id, -actual_total, WalletTransactionType.SETTLEMENT,
        reference_type="order",
        reference_id=order.id,
        description=f"Settlement for order {order.woo_order_number or order.id}",
        idempotency_key=f"settlement-{order.id}",
        metadata={
            "estimated_total": estimated_total,
            "actual_total": actual_total,
            "difference": estimated_total - actual_total,
        },
        currency=order.currency or "USD",
    )

    await transition_order(db, order, OrderStatus.SHIPPED, changed_by=actor_email, reason="Shipment in transit", values={
        "shipped_at": now,
        "actual_total_cents": actual_total,
        "tracking_number": shipment.tracking_number,
    })
    await create_audit_event(
        db, "shipment.shipped", "shipment", shipment.id,
        merchant_id=order.merchant_id,
        actor_email=actor_email,
        metadata={"order_id": order.id, "tracking_number": shipment.tracking_number},
    )
    await create_audit_event(
        db, "order.shipped", "order", order.id,
        merchant_id=order.merchant_id,
        actor_email=actor_email,
        metadata={"estimated_total": estimated_total, "actual_total": actual_total},
    )
    return {
        "shipment_id": shipment.id,
        "order_id": order.id,
        "status": order.status,
        "estimated_total_cents": estimated_total,
        "actual_total_cents": actual_total,
    }


async def update_shipment_status(db: AsyncSession, shipment: Shipment, order: Order, status: str, actor_email: Optional[str] = None) -> Shipment:
    """发货单状态变更；签收后订单完成"""
    if not can_transition_shipment(shipment.status, status):
        raise ApiError("SHIPMENT_INVALID_TRANSITION", f"Cannot change shipment from {shipment.status} to {status}", 400)

    previous = shipment.status
    shipment.status = status
    if status == ShipmentStatus.DELIVERED:
        shipment.delivered_at = datetime.utcnow()
        if can_transition_order(order.status, OrderStatus.COMPLETE):
            await transition_order(db, order, OrderStatus.COMPLETE, changed_by=actor_email, reason="Shipment delivered", values={
                "completed_at": datetime.utcnow(),
            })

    await create_audit_event(
        db, "shipment.updated", "shipment", shipment.id,
        merchant_id=order.merchant_id,
        actor_email=actor_email,
        old_values={"status": previous},
        new_values={"status": status},
    )
    return shipment
