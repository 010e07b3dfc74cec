"""管理后台 API 路由聚合（/api/v1/admin）"""

from fastapi import APIRouter

from . import (
    auth, dashboard, inventory, kyb_review, lots, merchants, mercury,
    reports, settings, shipments, system, team, withdrawals,
)
from .orders import routers as order_routers

router = APIRouter()

router.include_router(auth.router, tags=["管理员认证"])
router.include_router(team.router, prefix="/team", tags=["管理员团队"])
router.include_router(kyb_review.router, prefix="/kyb-review", tags=["KYB 审核"])
router.include_router(merchants.router, prefix="/merchants", tags=["商户管理"])
router.include_router(inventory.router, prefix="/inventory", tags=["库存管理"])
router.include_router(lots.router, prefix="/lots", tags=["批次管理"])
for order_router in order_routers:
    router.include_router(order_router, prefix="/orders", tags=["订单管理"])
router.include_router(shipments.router, prefix="/shipments", tags=["发货管理"])
router.include_router(mercury.router, prefix="/mercury", tags=["Mercury 发票"])
router.include_router(withdrawals.router, prefix="/withdrawals", tags=["提现审核"])
router.include_router(dashboard.router, prefix="/dashboard", tags=["数据概览"])
router.include_router(reports.router, prefix="/reports", tags=["经营报表"])
router.include_router(settings.router, prefix="/settings", tags=["平台设置"])
router.include_router(system.router, prefix="/system", tags=["系统管理"])
