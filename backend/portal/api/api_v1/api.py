"""V1 API 路由聚合"""
from fastapi import APIRouter

from portal.api.api_v1.endpoints import auth, onboarding, store_api, webhooks
from portal.api.api_v1.endpoints.admin import router as admin_router
from portal.api.api_v1.endpoints.merchant import router as merchant_router

api_router = APIRouter()

# 门户（会话认证）
api_router.include_router(auth.router, prefix="/auth", tags=["认证"])
api_router.include_router(admin_router, prefix="/admin")
api_router.include_router(merchant_router, prefix="/merchant")
api_router.include_router(onboarding.router, prefix="/onboarding", tags=["商户入驻"])

# 店铺插件（签名认证）
api_router.include_router(store_api.connect_router, prefix="/stores", tags=["店铺连接"])
api_router.include_router(store_api.orders_router, prefix="/orders", tags=["店铺订单"])

# 第三方回调
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["Webhook"])
