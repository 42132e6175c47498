import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from pharmastock.app.api.v1.router import router as v1_router
from pharmastock.app.config import get_settings
from pharmastock.app.logging_setup import setup_logging
from pharmastock.services.errors import (
    ConcurrentModificationError,
    InvalidRequestError,
    InvalidTransitionError,
    NotFoundError,
    PharmaStockError,
)

setup_logging(get_settings())
logger = logging.getLogger(__name__)

HTTP_STATUS = {
    NotFoundError: 404,
    InvalidTransitionError: 409,
    ConcurrentModificationError: 409,
    InvalidRequestError: 400,
}

app = FastAPI(title="PHARMASTOCK", version="0.1.0")
app.include_router(v1_router, prefix="/v1")


@app.exception_handler(PharmaStockError)
async def pharmastock_error_handler(request: Request, exc: PharmaStockError):
    status = next((code for cls, code in HTTP_STATUS.items() if isinstance(exc, cls)), 500)
    if status >= 500:
        logger.error("Unhandled %s on %s: %s", exc.code, request.url.path, exc.message)
    else:
        logger.info("%s on %s: %s", exc.code, request.url.path, exc.message)
    return JSONResponse(status_code=status, content={"detail": exc.message, "code": exc.code})
