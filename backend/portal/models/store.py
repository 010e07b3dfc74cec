"""店铺（WooCommerce 插件）连接"""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String

from portal.db.base import Base, created_at_column, uuid_pk


class StoreStatus:
    CONNECTED = "CONNECTED"
    DISCONNECTED = "DISCONNECTED"


class Store(Base):
    __tablename__ = "stores"

    id = uuid_pk()
    merchant_id = Column(String(36), ForeignKey("merchants.id"), nullable=False, index=True)
    type = Column(String(30), default="woocommerce")
    name = Column(String(255), nullable=False)
    url = Column(String(500), nullable=False)
    status = Column(String(20), default=StoreStatus.CONNECTED, index=True)
    currency = Column(String(3), default="USD")
    timezone = Column(String(50))
    woo_version = Column(String(20))
    created_at = created_at_column()

    def __repr__(self):
        return f"<Store {self.name} {self.status}>"


class StoreSecret(Base):
    """签名密钥：明文用于 HMAC 校验，哈希用于查找"""
    __tablename__ = "store_secrets"

    id = uuid_pk()
    store_id = Column(String(36), ForeignKey("stores.id"), nullable=False, index=True)
    secret_hash = Column(String(64), nullable=False)
    secret_plaintext = Column(String(255))
    is_active = Column(Boolean, default=True)
    created_at = created_at_column()


class ConnectCode(Base):
    """一次性连接码（存储时去掉连字符）"""
    __tablename__ = "connect_codes"

    id = uuid_pk()
    merchant_id = Column(String(36), ForeignKey("merchants.id"), nullable=False, index=True)
    code = Column(String(32), unique=True, nullable=False, index=True)
    expires_at = Column(DateTime, nullable=False)
    used_at = Column(DateTime)
    store_id = Column(String(36), ForeignKey("stores.id"))
    created_at = created_at_column()
