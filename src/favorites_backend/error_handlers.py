"""统一异常处理（ErrorResponse）。

目标：
- 所有 /api/v1 接口出错时返回稳定的 JSON 结构：
  {error, message, request_id, details}
- 存储层错误保留自身错误码；普通 HTTP 错误按状态码映射
"""

from __future__ import annotations

import logging
from typing import cast

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from favorites_backend.errors import StoreError
from favorites_backend.schemas_common import ErrorResponse

logger = logging.getLogger(__name__)


def _map_http_status_to_error(status_code: int) -> str:
    mapping: dict[int, str] = {
        400: "invalid_argument",
        401: "unauthorized",
        403: "forbidden",
        404: "not_found",
        405: "method_not_allowed",
        409: "already_exists",
        422: "validation_error",
    }
    return mapping.get(status_code, f"http_{status_code}")


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


async def _store_error_handler(request: Request, exc: Exception) -> JSONResponse:
    store_exc = cast(StoreError, exc)
    if store_exc.status_code >= 500:
        # 存储层已记录底层异常；不向客户端暴露 SQL 或 driver 信息
        message = "Internal server error"
    else:
        message = store_exc.message

    payload = ErrorResponse(
        error=store_exc.error,
        message=message,
        request_id=_request_id(request),
        details=store_exc.details if store_exc.status_code < 500 else None,
    )
    return JSONResponse(
        status_code=store_exc.status_code,
        content=jsonable_encoder(payload, exclude_none=True),
    )


async def _http_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    http_exc = cast(StarletteHTTPException, exc)

    details: object | None = None
    message = str(http_exc.detail)
    if isinstance(http_exc.detail, dict):
        # 约定：{'message': str, 'details': object}
        msg = http_exc.detail.get("message")
        if isinstance(msg, str):
            message = msg
            details = http_exc.detail.get("details")
        else:
            details = http_exc.detail
    elif isinstance(http_exc.detail, list):
        details = http_exc.detail

    payload = ErrorResponse(
        error=_map_http_status_to_error(http_exc.status_code),
        message=message,
        request_id=_request_id(request),
        details=details,
    )
    headers = getattr(http_exc, "headers", None)
    return JSONResponse(
        status_code=http_exc.status_code,
        content=jsonable_encoder(payload, exclude_none=True),
        headers=headers,
    )


async def _validation_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    validation_exc = cast(RequestValidationError, exc)
    payload = ErrorResponse(
        error="validation_error",
        message="Request validation error",
        request_id=_request_id(request),
        details=validation_exc.errors(),
    )
    return JSONResponse(status_code=422, content=jsonable_encoder(payload, exclude_none=True))


async def _unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    request_id = _request_id(request)
    logger.exception(
        "unhandled exception request_id=%s method=%s path=%s",
        request_id,
        request.method,
        request.url.path,
        exc_info=exc,
    )
    payload = ErrorResponse(
        error="internal_error",
        message="Internal server error",
        request_id=request_id,
    )
    return JSONResponse(status_code=500, content=jsonable_encoder(payload, exclude_none=True))


def register_error_handlers(app: FastAPI) -> None:
    """为 FastAPI 应用注册统一异常处理。"""
    app.add_exception_handler(StoreError, _store_error_handler)
    app.add_exception_handler(StarletteHTTPException, _http_exception_handler)
    app.add_exception_handler(RequestValidationError, _validation_exception_handler)
    app.add_exception_handler(Exception, _unhandled_exception_handler)
