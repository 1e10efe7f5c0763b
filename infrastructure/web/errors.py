import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from core.errors import InternalError, TokenError

logger = logging.getLogger(__name__)


async def token_error_handler(request: Request, exc: TokenError) -> JSONResponse:
    if isinstance(exc, InternalError):
        # подробности уже в логе, наружу - только общий текст
        logger.error("Internal error on %s %s: %s", request.method, request.url.path, exc.message)
        detail = "Internal server error"
    else:
        detail = exc.message
    return JSONResponse(status_code=exc.status_code, content={"detail": detail, "kind": exc.kind})
