"""
HTTP middleware for the UI bridge.

`ErrorHandlingMiddleware` renders a `ChatSyncError` escaping an endpoint as
`{"error": {error_code, message, details, context}}`, where `context` is the
sync context id of the session the engine holds when the error is rendered
(None when signed out). The status comes from `core.exceptions`; a 401 also
carries `WWW-Authenticate`. A result discarded because its session ended is
expected during sign-out and only logged at info. Anything else becomes a
generic 500 with no internals in the body.
"""

from typing import Callable, Optional

from fastapi import Request, Response, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .exceptions import ChatSyncError, StaleSessionError, to_http_exception
from .logging_config import get_logger

logger = get_logger("core.middleware")


def _context_id(request: Request) -> Optional[str]:
    engine = getattr(request.app.state, "engine", None)
    ctx = engine.state.context if engine is not None else None
    return ctx.id if ctx is not None else None


def error_response(exc: ChatSyncError, context_id: Optional[str] = None) -> JSONResponse:
    http_exc = to_http_exception(exc)
    headers = (
        {"WWW-Authenticate": "Bearer"}
        if http_exc.status_code == status.HTTP_401_UNAUTHORIZED
        else None
    )
    return JSONResponse(
        status_code=http_exc.status_code,
        content={"error": {**http_exc.detail, "context": context_id}},
        headers=headers,
    )


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except ChatSyncError as e:
            context_id = _context_id(request)
            log = logger.info if isinstance(e, StaleSessionError) else logger.warning
            log(
                f"{request.method} {request.url.path} failed: {e.message}",
                extra={"error_code": e.error_code, "path": request.url.path},
            )
            return error_response(e, context_id)
        except Exception as e:
            logger.error(
                f"{request.method} {request.url.path} raised {type(e).__name__}: {e}",
                extra={"path": request.url.path},
                exc_info=True,
            )
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={
                    "error": {
                        "error_code": "INTERNAL_ERROR",
                        "message": "An unexpected error occurred",
                        "details": {},
                        "context": _context_id(request),
                    }
                },
            )
