"""
ScanMaster - Response Envelope

Every response body has the shape:

    {"code": <http status>, "status": "success" | "failed" | "error",
     "message": "...", "data": ..., "error": {"kind": ..., "detail": ...}}

"failed" marks client errors (4xx), "error" marks server errors (5xx).
Exception handlers translate AuthError kinds to HTTP statuses.
"""

from typing import Any, Optional

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger
from starlette.exceptions import HTTPException as StarletteHTTPException

from scanmaster.errors import AuthError


def envelope_status(code: int) -> str:
    if code >= 500:
        return "error"
    if code >= 400:
        return "failed"
    return "success"


def envelope(code: int, message: str, data: Any = None, error: Optional[dict] = None) -> dict:
    body = {"code": code, "status": envelope_status(code), "message": message}
    if data is not None:
        body["data"] = jsonable_encoder(data)
    if error is not None:
        body["error"] = error
    return body


def success(data: Any = None, message: str = "ok", code: int = status.HTTP_200_OK) -> JSONResponse:
    """Wrap a successful result in the envelope."""
    return JSONResponse(status_code=code, content=envelope(code, message, data))


def failure(code: int, kind: str, detail: str, headers: Optional[dict] = None) -> JSONResponse:
    return JSONResponse(
        status_code=code,
        content=envelope(code, detail, error={"kind": kind, "detail": detail}),
        headers=headers,
    )


async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    headers = None
    if exc.status_code == status.HTTP_401_UNAUTHORIZED:
        headers = {"WWW-Authenticate": "Bearer"}
    if exc.status_code >= 500:
        logger.error("{} {} failed: {} ({})", request.method, request.url.path, exc.message, exc.kind)
        # Store details stay in the log
        return failure(exc.status_code, exc.kind, exc.default_message)
    return failure(exc.status_code, exc.kind, exc.message, headers=headers)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = "; ".join(
        f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg')}"
        for err in exc.errors()
    )
    return failure(status.HTTP_400_BAD_REQUEST, "ValidationFailure", problems or "invalid request")


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    kind = "NotFound" if exc.status_code == status.HTTP_404_NOT_FOUND else "HTTPError"
    return failure(exc.status_code, kind, str(exc.detail), headers=getattr(exc, "headers", None))


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on {} {}", request.method, request.url.path)
    return failure(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal", "internal error")


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AuthError, auth_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
