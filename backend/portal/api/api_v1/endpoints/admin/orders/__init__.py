"""
管理端订单 API

- core: 响应构建、通用查询
- crud: 列表、详情、更新
- actions: 打包、退款、取消、拣货单、批量建发货单

子路由使用空路径（/admin/orders 本身），必须在挂载时带上 /orders 前缀，
因此这里只导出路由列表，由 admin/__init__.py 逐个挂载。
"""

from .crud import router as crud_router
from .actions import router as actions_router

routers = [crud_router, actions_router]
