"""
统一错误处理

所有错误响应都是 {"error": "..."} 结构：
- HTTPException → {"error": detail}
- 请求校验失败 → 400 {"error": "Validation failed", "details": {字段路径: [消息]}}
- ApiError（业务错误码）→ {"error": message, "code": code}
- 未捕获异常 → 500，记录堆栈
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class ApiError(Exception):
    """带错误码的业务异常"""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 400,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


class Errors:
    """常用错误工厂"""

    @staticmethod
    def unauthorized(message: str = "Unauthorized") -> ApiError:
        return ApiError("UNAUTHORIZED", message, 401)

    @staticmethod
    def not_found(message: str = "Resource not found") -> ApiError:
        return ApiError("NOT_FOUND", message, 404)

    @staticmethod
    def signature_invalid(message: str = "Invalid request signature") -> ApiError:
        return ApiError("SIGNATURE_INVALID", message, 401)

    @staticmethod
    def signature_expired() -> ApiError:
        return ApiError("SIGNATURE_EXPIRED", "Request signature expired", 401)

    @staticmethod
    def connect_code_invalid() -> ApiError:
        return ApiError("CONNECT_CODE_INVALID", "Invalid or expired connect code", 400)

    @staticmethod
    def store_disconnected() -> ApiError:
        return ApiError("STORE_DISCONNECTED", "Store is disconnected", 400)

    @staticmethod
    def order_not_cancellable(status: str) -> ApiError:
        return ApiError("ORDER_NOT_CANCELLABLE", f"Cannot cancel order in {status} status", 400)


def format_validation_errors(errors: List[Dict[str, Any]]) -> Dict[str, List[str]]:
    """把 pydantic 错误列表整理为 {字段路径: [消息...]}"""
    details: Dict[str, List[str]] = {}
    for err in errors:
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path", "form")]
        key = ".".join(loc) or "_"
        details.setdefault(key, []).append(err.get("msg", "Invalid value"))
    return details


def register_exception_handlers(app: FastAPI) -> None:
    """在应用上注册全局异常处理器"""
    # 延迟导入，避免 core 与 services 循环依赖
    from portal.services.errors import ServiceError

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        headers = getattr(exc, "headers", None)
        detail = exc.detail if isinstance(exc.detail, (str, dict)) else str(exc.detail)
        content = detail if isinstance(detail, dict) else {"error": detail}
        return JSONResponse(status_code=exc.status_code, content=content, headers=headers)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={"error": "Validation failed", "details": format_validation_errors(exc.errors())},
        )

    @app.exception_handler(ApiError)
    async def api_error_handler(request: Request, exc: ApiError):
        if exc.status_code >= 500:
            logger.error(f"❌ {exc.code}: {exc.message} [{request.method} {request.url.path}]")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError):
        if exc.http_status >= 500:
            logger.error(f"❌ 外部服务错误 [{request.method} {request.url.path}]: {exc}")
        else:
            logger.warning(f"业务校验失败 [{request.method} {request.url.path}]: {exc}")
        return JSONResponse(status_code=exc.http_status, content={"error": exc.public_message})

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception(f"❌ 未处理异常 [{request.method} {request.url.path}]: {exc}")
        return JSONResponse(status_code=500, content={"error": "Internal server error"})
