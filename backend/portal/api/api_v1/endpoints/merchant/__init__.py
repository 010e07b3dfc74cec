"""商户端 API 路由聚合（/api/v1/merchant）"""

from fastapi import APIRouter

from . import account, catalog, orders, stores, team, wallet

router = APIRouter()

router.include_router(account.router, tags=["商户账户"])
router.include_router(wallet.router, tags=["钱包与账单"])
router.include_router(stores.router, tags=["店铺连接"])
router.include_router(orders.router, prefix="/orders", tags=["商户订单"])
router.include_router(catalog.router, prefix="/catalog", tags=["商品目录"])
router.include_router(team.router, prefix="/team", tags=["商户团队"])
