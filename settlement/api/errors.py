from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from settlement.domain.errors import SettlementError
from shared.core import get_logger

logger = get_logger(__name__)


async def settlement_error_handler(request: Request, exc: SettlementError) -> JSONResponse:
    status_code = exc.status_code
    log = logger.error if status_code >= 500 else logger.info
    log(
        f"{exc.code}: {exc.message}",
        extra={'extra_fields': {
            'path': request.url.path,
            'status_code': status_code,
            'retryable': exc.retryable,
        }}
    )
    headers = {"Retry-After": "1"} if exc.retryable else None
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "code": exc.code, "retryable": exc.retryable},
        headers=headers,
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(SettlementError, settlement_error_handler)
