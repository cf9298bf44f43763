import datetime
import traceback
from typing import Any

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from h2_registry.core.errors import LedgerError
from h2_registry.logging_config import logger
from h2_registry.settings import settings


class ErrorResponse(Exception):
    """Standardised error body returned by every handler below."""

    def __init__(
        self,
        status_code: int,
        message: str,
        *,
        request: Request | None = None,
        details: dict[str, Any] | None = None,
        error_type: str = "error",
        exc: Exception | None = None,
        include_stack: bool = False,
    ) -> None:
        self.timestamp = datetime.datetime.now(datetime.timezone.utc)
        self.status_code = status_code
        self.message = message
        self.error_type = error_type
        self.details = details or {}

        if request:
            self.details.update(
                {
                    "method": request.method,
                    "path": request.url.path,
                    "caller": request.headers.get("x-account-address"),
                }
            )

        # Stack traces only when asked for and a traceback actually exists
        if include_stack and exc and exc.__traceback__:
            tb_exc = traceback.TracebackException.from_exception(exc)
            if tb_exc.stack:
                last = tb_exc.stack[-1]
                self.details["source_location"] = {
                    "file": last.filename,
                    "line": last.lineno,
                    "function": last.name,
                }
            self.details["stack"] = list(tb_exc.format())

    @classmethod
    def from_ledger_error(
        cls, exc: LedgerError, request: Request | None = None
    ) -> "ErrorResponse":
        return cls(
            status_code=exc.status_code,
            message=exc.message,
            request=request,
            details=dict(exc.details),
            error_type=exc.kind,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "status_code": self.status_code,
            "error_message": self.message,
            "details": self.details,
            "error_type": self.error_type,
            "timestamp": self.timestamp.isoformat(),
        }


def _extract_value(body: Any, path: tuple[Any, ...]) -> Any:
    """
    Walk the request body using the error location to fetch the offending value
    ('body', 'foo', 0, 'bar') → body['foo'][0]['bar']
    """
    cur = body
    for part in path[1:]:
        if isinstance(cur, dict):
            cur = cur.get(part)
        elif isinstance(cur, list) and isinstance(part, int) and part < len(cur):
            cur = cur[part]
        else:
            return None
    return cur


def format_validation_error(
    exc: RequestValidationError,
    request: Request,
) -> ErrorResponse:
    enriched: list[dict[str, Any]] = []

    for err in exc.errors():
        loc_tuple: tuple[Any, ...] = tuple(err["loc"])
        ctx = err.get("ctx", {})
        if ctx and isinstance(ctx, dict):
            ctx = {
                k: (str(v) if isinstance(v, BaseException) else v)
                for k, v in ctx.items()
            }
        enriched.append(
            {
                "location": " -> ".join(str(x) for x in loc_tuple),
                "field": loc_tuple[-1] if len(loc_tuple) > 1 else None,
                "invalid_value": _extract_value(exc.body, loc_tuple),
                "message": err["msg"],
                "type": err["type"],
                "ctx": ctx,
            }
        )

    return ErrorResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        message="Validation error",
        request=request,
        details={"errors": enriched},
        error_type="validation_error",
    )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    error_response = format_validation_error(exc, request)
    logger.warning(f"Validation error: {error_response.to_dict()}")
    return JSONResponse(
        status_code=error_response.status_code,
        content=error_response.to_dict(),
    )


async def ledger_exception_handler(request: Request, exc: LedgerError) -> JSONResponse:
    """Render a rejected ledger operation with its error kind."""
    error_response = ErrorResponse.from_ledger_error(exc, request)
    logger.info(
        f"Rejected {request.method} {request.url.path}: {exc.kind} - {exc.message}"
    )
    return JSONResponse(
        status_code=error_response.status_code,
        content=error_response.to_dict(),
    )


async def http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> Response | JSONResponse:
    error_response = ErrorResponse(
        status_code=exc.status_code, message=str(exc.detail), error_type="http_error"
    )
    logger.warning(f"HTTP error: {error_response.to_dict()}")
    return JSONResponse(
        status_code=error_response.status_code, content=error_response.to_dict()
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Only expose the stack trace outside PROD
    show_stack = settings.ENVIRONMENT != "PROD"
    error_response = ErrorResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        message=str(exc) if show_stack else "An unexpected error occurred.",
        request=request,
        details={"exception_type": type(exc).__name__},
        error_type="server_error",
        exc=exc,
        include_stack=show_stack,
    )
    logger.error(
        f"Unhandled exception for {request.method} {request.url.path}", exc_info=exc
    )
    return JSONResponse(
        status_code=error_response.status_code,
        content=error_response.to_dict(),
    )
