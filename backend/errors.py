# Domain errors and the shared response envelopes
from __future__ import annotations
import traceback
from typing import Any, Optional

import structlog
from bson import ObjectId
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import get_settings

logger = structlog.get_logger(__name__)


class ApiError(Exception):
    status_code = 500
    default_message = "Something went wrong"

    def __init__(self, message: Optional[str] = None, errors: Optional[list[Any]] = None, status_code: Optional[int] = None):
        self.message = message or self.default_message
        self.errors = errors or []
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)


class Unauthorized(ApiError):
    status_code = 401
    default_message = "Unauthorized request"


class Forbidden(ApiError):
    status_code = 403
    default_message = "You are not allowed to perform this action"


class NotFound(ApiError):
    status_code = 404
    default_message = "Resource does not exist"


class InvalidCoupon(NotFound):
    default_message = "Invalid coupon code"


class InvalidInput(ApiError):
    status_code = 400
    default_message = "Invalid input"


class InsufficientStock(ApiError):
    status_code = 400
    default_message = "Product is out of stock"


class BelowMinimum(ApiError):
    status_code = 400
    default_message = "Cart total is below the coupon minimum"


class InvalidSignature(ApiError):
    status_code = 400
    default_message = "Invalid payment signature"


class AlreadyDelivered(ApiError):
    status_code = 400
    default_message = "Order is already delivered"


class PaymentProviderError(ApiError):
    status_code = 500
    default_message = "Something went wrong with the payment provider"


def encode(content: Any) -> Any:
    return jsonable_encoder(content, custom_encoder={ObjectId: str})


def api_response(status_code: int, data: Any, message: str = "Success") -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=encode({
            "statusCode": status_code,
            "data": data,
            "message": message,
            "success": status_code < 400,
        }),
    )


def _error_response(status_code: int, message: str, errors: list[Any], exc: Exception) -> JSONResponse:
    body: dict[str, Any] = {
        "statusCode": status_code,
        "data": None,
        "message": message,
        "success": False,
        "errors": errors,
    }
    if get_settings().is_development:
        body["stack"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return JSONResponse(status_code=status_code, content=encode(body))


async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("api_error", path=request.url.path, status_code=exc.status_code, message=exc.message)
    return _error_response(exc.status_code, exc.message, exc.errors, exc)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [{err["loc"][-1] if err.get("loc") else "body": err.get("msg")} for err in exc.errors()]
    return _error_response(400, "Received data is not valid", errors, exc)


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return _error_response(exc.status_code, str(exc.detail), [], exc)


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_error", path=request.url.path)
    message = "Something went wrong"
    if get_settings().is_development and str(exc):
        message = str(exc)
    return _error_response(500, message, [], exc)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ApiError, api_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
