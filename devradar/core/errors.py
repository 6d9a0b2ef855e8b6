"""Error taxonomy shared by the HTTP API and the realtime gateway."""

import builtins
import logging
from typing import Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from devradar.core.logging import get_request_id


class CloseCode:
    """WebSocket close codes sent by the gateway."""

    NORMAL = 1000
    GOING_AWAY = 1001
    INVALID_DATA = 1003
    SERVER_ERROR = 1011

    HEARTBEAT_TIMEOUT = 4000
    UNAUTHORIZED = 4001
    INVALID_TOKEN = 4002
    TOKEN_EXPIRED = 4003
    RATE_LIMITED = 4029


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id


class AuthenticationError(AppError):
    """Missing, invalid, expired or revoked credential. Never retried by the server."""
    code = "unauthorized"
    status_code = 401
    close_code = CloseCode.UNAUTHORIZED


class MissingCredentialError(AuthenticationError):
    code = "credential_missing"
    close_code = CloseCode.UNAUTHORIZED


class InvalidCredentialError(AuthenticationError):
    code = "credential_invalid"
    close_code = CloseCode.INVALID_TOKEN


class ExpiredCredentialError(AuthenticationError):
    code = "credential_expired"
    close_code = CloseCode.TOKEN_EXPIRED


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class PermissionError(AppError, builtins.PermissionError):
    code = "forbidden"
    status_code = 403


class RateLimitError(AppError):
    code = "rate_limited"
    status_code = 429
    close_code = CloseCode.RATE_LIMITED


class InternalError(AppError):
    """A store or collaborator is unavailable."""
    code = "internal_error"
    status_code = 503


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str) -> dict:
    return {
        "error": {"code": code, "message": message, "request_id": request_id},
        "detail": message,
    }


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    payload = _error_payload(exc.code, exc.message, rid)
    logger = logging.getLogger("devradar")
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    if isinstance(exc, AuthenticationError):
        response.headers["WWW-Authenticate"] = "Bearer"
    return response


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    message = exc.detail if exc.detail else "HTTP error"
    payload = _error_payload(code, message, rid)
    logger = logging.getLogger("devradar")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def request_validation_handler(request: Request, exc):
    rid = _extract_request_id(request)
    payload = _error_payload("validation_error", "Invalid request payload", rid)
    payload["error"]["fields"] = [
        {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg")}
        for err in exc.errors()
    ]
    logging.getLogger("devradar").warning(
        "request.invalid", extra={"request_id": rid, "error_code": "validation_error", "status": 400}
    )
    response = JSONResponse(status_code=400, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("devradar")
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    payload = _error_payload("internal_error", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
