"""服务层异常（由全局处理器转换为 {"error": ...} 响应）"""

from typing import Any, Optional


class ServiceError(Exception):
    http_status = 500
    public_message: str = "Internal server error"

    def __init__(self, message: str, public_message: Optional[str] = None):
        super().__init__(message)
        if public_message is not None:
            self.public_message = public_message
        else:
            self.public_message = message if self.http_status < 500 else self.public_message


class WalletOperationError(ServiceError):
    http_status = 400


class WalletInsufficientBalanceError(WalletOperationError):
    http_status = 402

    def __init__(self, balance_cents: int, amount_cents: int):
        super().__init__(
            f"Insufficient balance: balance={balance_cents}, change={amount_cents}",
            public_message="Insufficient wallet balance",
        )
        self.balance_cents = balance_cents
        self.amount_cents = amount_cents


class WalletNotFoundError(WalletOperationError):
    http_status = 404

    def __init__(self, merchant_id: str, currency: str = "USD"):
        super().__init__(f"Wallet not found for merchant {merchant_id} ({currency})", public_message="Wallet not found")


class OrderTransitionError(ServiceError):
    """非法或并发冲突的状态流转"""
    http_status = 409

    def __init__(self, order_id: str, from_status: str, to_status: str, reason: str = "invalid transition"):
        super().__init__(
            f"Cannot transition order {order_id} from {from_status} to {to_status}: {reason}",
            public_message=f"Cannot move order from {from_status} to {to_status}",
        )
        self.from_status = from_status
        self.to_status = to_status


class ExternalServiceError(ServiceError):
    """第三方接口失败（日志保留细节，对外只给通用提示）"""
    http_status = 502
    service_name = "external service"

    def __init__(self, message: str, status_code: Optional[int] = None, response_body: Any = None):
        super().__init__(message, public_message=f"{self.service_name} request failed. Please try again.")
        self.status_code = status_code
        self.response_body = response_body


class MercuryError(ExternalServiceError):
    service_name = "Mercury"


class ShipStationError(ExternalServiceError):
    service_name = "ShipStation"


class SupabaseError(ExternalServiceError):
    service_name = "Supabase"


class EmailError(ExternalServiceError):
    service_name = "Email"
