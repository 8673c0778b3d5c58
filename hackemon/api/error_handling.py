from __future__ import annotations

from typing import Any, Mapping, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from hackemon.api.schemas import ErrorEnvelope
from hackemon.logging import get_correlation_id, get_logger
from hackemon.service.errors import AuthErrorCode, ServiceError
from hackemon.storage.errors import ConstraintViolation, StoreUnavailable

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: AuthErrorCode.BAD_REQUEST,
    401: AuthErrorCode.UNAUTHORIZED,
    403: AuthErrorCode.FORBIDDEN,
    404: AuthErrorCode.NOT_FOUND,
    405: AuthErrorCode.METHOD_NOT_ALLOWED,
    409: AuthErrorCode.USER_EXISTS,
    429: AuthErrorCode.ACCOUNT_LOCKED,
    503: AuthErrorCode.DB_UNAVAILABLE,
}


def _error_code_for_status(status_code: int) -> AuthErrorCode:
    return _STATUS_TO_CODE.get(status_code, AuthErrorCode.SERVER_ERROR)


def _error_response(
    status_code: int,
    message: str,
    details: Any = None,
    code: Optional[AuthErrorCode] = None,
    headers: Optional[Mapping[str, str]] = None,
) -> JSONResponse:
    error_code = code or _error_code_for_status(status_code)
    envelope = ErrorEnvelope(
        error=message,
        code=AuthErrorCode(error_code).value,
        details=details or None,
        request_id=get_correlation_id(),
    )
    return JSONResponse(
        status_code=status_code,
        content=envelope.model_dump(mode="json", exclude_none=True),
        headers=dict(headers) if headers else None,
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Install handlers that render every failure as an ``ErrorEnvelope``."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        # input and auth failures are expected traffic; only server faults are errors
        log_fn = logger.error if exc.status_code >= 500 else logger.info
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code.value,
            category=exc.error_code.category.value,
        )
        return _error_response(
            exc.status_code, exc.message, exc.detail, code=exc.error_code, headers=exc.headers
        )

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        code = AuthErrorCode.USER_EXISTS
        return _error_response(409, code.default_message, code=code)

    @app.exception_handler(StoreUnavailable)
    async def handle_store_unavailable(request: Request, exc: StoreUnavailable):
        logger.error(
            "store_unavailable",
            path=request.url.path,
            method=request.method,
            error=str(exc),
        )
        code = AuthErrorCode.DB_UNAVAILABLE
        return _error_response(503, code.default_message, code=code)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        fields = sorted(
            {
                str(err["loc"][-1])
                for err in exc.errors()
                if err.get("loc") and err["loc"][0] == "body" and len(err["loc"]) > 1
            }
        )
        logger.info(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            fields=fields,
        )
        code = AuthErrorCode.MISSING_FIELDS
        details = {"fields": fields} if fields else None
        return _error_response(400, code.default_message, details, code=code)

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        code = _error_code_for_status(exc.status_code)
        message = exc.detail if isinstance(exc.detail, str) else code.default_message
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(
            exc.status_code, message, code=code, headers=getattr(exc, "headers", None)
        )

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        code = AuthErrorCode.SERVER_ERROR
        return _error_response(500, code.default_message, code=code)
