from fastapi import Request, HTTPException
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from core.logging import get_api_logger_safe
from core.utils.exceptions import (
    ConfigurationError,
    CustodianError,
    CustodianRejectedError,
    CustodyLedgerException,
    NotFoundError,
    SettlementRollbackError,
    create_error_context,
)
from api.schemas.responses import ErrorResponse
from services.transfers.service import SettlementQueueFullError

logger = get_api_logger_safe("api.middleware.error_handling")


def status_code_for(exc: CustodyLedgerException) -> int:
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, CustodianError):
        return 503
    if isinstance(exc, CustodianRejectedError):
        return 502
    if isinstance(exc, (SettlementRollbackError, ConfigurationError)):
        return 500
    return 409


def error_body(error: str, message: str) -> dict:
    return ErrorResponse(error=error, message=message).model_dump(mode="json")


async def custody_exception_handler(request: Request, exc: CustodyLedgerException) -> JSONResponse:
    status_code = status_code_for(exc)
    log = logger.error if status_code >= 500 else logger.warning
    log("Request failed", path=request.url.path, method=request.method, status_code=status_code,
        **create_error_context(exc, "api_request"))
    return JSONResponse(status_code=status_code, content=error_body(exc.error_code, exc.message))


async def queue_full_handler(request: Request, exc: SettlementQueueFullError) -> JSONResponse:
    logger.warning("Settlement queue full", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=503, content=error_body("SettlementQueueFull", str(exc)))


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Global error handling middleware"""

    async def dispatch(self, request: Request, call_next):
        try:
            response = await call_next(request)
            return response
        except HTTPException as e:
            # Let FastAPI handle HTTP exceptions normally
            raise e
        except Exception as e:
            logger.error(
                "Unhandled API exception",
                path=request.url.path,
                method=request.method,
                error=str(e),
                error_type=type(e).__name__,
            )
            return JSONResponse(
                status_code=500,
                content=error_body("InternalError", "An unexpected error occurred"),
            )
