# models包初始化文件
# 导入全部模型，确保 Base.metadata 能创建所有表

from portal.models.merchant import Merchant, MerchantUser, KybDocument
from portal.models.admin import AdminUser, AdminLoginCode, Invitation
from portal.models.store import Store, StoreSecret, ConnectCode
from portal.models.catalog import Product, Inventory, Lot, MerchantProduct
from portal.models.order import Order, OrderItem, OrderStatusHistory, Shipment
from portal.models.wallet import WalletAccount, WalletTransaction, WithdrawalRequest
from portal.models.billing import MercuryInvoice
from portal.models.system import AuditEvent, Notification, WebhookEvent, AdminSetting

__all__ = [
    "Merchant",
    "MerchantUser",
    "KybDocument",
    "AdminUser",
    "AdminLoginCode",
    "Invitation",
    "Store",
    "StoreSecret",
    "ConnectCode",
    "Product",
    "Inventory",
    "Lot",
    "MerchantProduct",
    "Order",
    "OrderItem",
    "OrderStatusHistory",
    "Shipment",
    "WalletAccount",
    "WalletTransaction",
    "WithdrawalRequest",
    "MercuryInvoice",
    "AuditEvent",
    "Notification",
    "WebhookEvent",
    "AdminSetting",
]
