"""异常处理模块：定义统一的业务异常、存储异常与响应格式。

业务层抛出 ``AppException`` 的子类，全局处理器统一转换为
``{"msg", "data", "code"}`` 结构；存储后端只抛出 ``StorageError`` 体系，
不向上泄露具体 SDK 的异常类型。
"""

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse

from app.packages.trove.core.constants import (
    HTTP_STATUS_BAD_REQUEST,
    HTTP_STATUS_CLIENT_CLOSED_REQUEST,
    HTTP_STATUS_CONFLICT,
    HTTP_STATUS_FORBIDDEN,
    HTTP_STATUS_INSUFFICIENT_STORAGE,
    HTTP_STATUS_INTERNAL_SERVER_ERROR,
    HTTP_STATUS_NOT_FOUND,
    HTTP_STATUS_REQUEST_ENTITY_TOO_LARGE,
    HTTP_STATUS_SERVICE_UNAVAILABLE,
)
from app.packages.trove.core.logger import get_request_id, logger


class AppException(HTTPException):
    """携带统一响应结构的业务异常，方便在全局处理中转换响应体。"""

    default_msg = "请求处理失败"
    default_code = HTTP_STATUS_BAD_REQUEST

    def __init__(self, msg: str | None = None, code: int | None = None, data=None) -> None:
        super().__init__(status_code=code or self.default_code, detail=msg or self.default_msg)
        self.data = data

    @property
    def msg(self) -> str:
        return self.detail


class FileTooLargeError(AppException):
    default_msg = "文件超出上传大小限制"
    default_code = HTTP_STATUS_REQUEST_ENTITY_TOO_LARGE


class QuotaExceededError(AppException):
    default_msg = "存储空间不足"
    default_code = HTTP_STATUS_INSUFFICIENT_STORAGE


class NotFoundError(AppException):
    default_msg = "资源不存在"
    default_code = HTTP_STATUS_NOT_FOUND


class DeniedError(NotFoundError):
    """访问他人资源：对外表现与不存在一致，避免资源枚举。"""


class ConflictError(AppException):
    default_msg = "资源已存在"
    default_code = HTTP_STATUS_CONFLICT


class BackendUnavailableError(AppException):
    default_msg = "存储服务暂不可用"
    default_code = HTTP_STATUS_SERVICE_UNAVAILABLE


class InternalError(AppException):
    default_msg = "服务器内部错误"
    default_code = HTTP_STATUS_INTERNAL_SERVER_ERROR


# ------------------------------------------
# 存储后端异常
# ------------------------------------------


class StorageError(AppException):
    """存储后端异常基类，``key`` 指向出错的存储键（可为空）。"""

    default_msg = "存储操作失败"
    default_code = HTTP_STATUS_INTERNAL_SERVER_ERROR

    def __init__(self, msg: str | None = None, *, key: str | None = None, code: int | None = None) -> None:
        super().__init__(msg, code, {"key": key} if key else None)
        self.key = key


class StorageNotFound(StorageError):
    default_msg = "存储对象不存在"
    default_code = HTTP_STATUS_NOT_FOUND


class StorageUnavailable(StorageError):
    default_msg = "存储服务暂不可用"
    default_code = HTTP_STATUS_SERVICE_UNAVAILABLE


class StorageDenied(StorageError):
    default_msg = "存储访问被拒绝"
    default_code = HTTP_STATUS_FORBIDDEN


class StorageInternal(StorageError):
    pass


class OperationCancelled(AppException):
    default_msg = "操作已取消"
    default_code = HTTP_STATUS_CLIENT_CLOSED_REQUEST


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:  # pragma: no cover - framework glue
    """将 FastAPI 的 ``HTTPException`` 转换为统一响应格式。"""
    payload = {"msg": exc.detail, "data": getattr(exc, "data", None), "code": exc.status_code}
    return JSONResponse(status_code=exc.status_code, content=payload, headers=getattr(exc, "headers", None))


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:  # pragma: no cover - framework glue
    """兜底处理：记录请求 ID 后转换为标准的 500 响应结构。"""
    logger.error(
        "Unhandled error method=%s path=%s request_id=%s",
        request.method,
        request.url.path,
        get_request_id(),
        exc_info=exc,
    )
    payload = {
        "msg": InternalError.default_msg,
        "data": {"request_id": get_request_id()},
        "code": HTTP_STATUS_INTERNAL_SERVER_ERROR,
    }
    return JSONResponse(status_code=HTTP_STATUS_INTERNAL_SERVER_ERROR, content=payload)
