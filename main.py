from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.core.errors import LedgerError
from app.core.logging_config import configure_logging
from app.core.middleware import CompanyMiddleware
from app.db.base import Base
from app.db.session import CONTENTION_BACKOFF_MS, engine

# Register models
from app.db import models  # noqa: F401

from services.inventory.api import router as inventory_router
from services.transfers.api import router as transfers_router
from services.sales.api import router as sales_router
from services.billing.api import router as billing_router

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="Distribution Core: Inventory Ledger & Fulfilment")
app.add_middleware(CompanyMiddleware)


@app.exception_handler(LedgerError)
async def _ledger_error(request: Request, exc: LedgerError):
    logger.warning("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
    headers = {}
    if exc.retryable:
        headers["Retry-After"] = str(max(1, CONTENTION_BACKOFF_MS // 1000))
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


@app.exception_handler(Exception)
async def _unexpected_error(request: Request, exc: Exception):
    logger.exception("unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "INTERNAL_ERROR", "detail": "Internal server error"})


@app.on_event("startup")
async def _startup():
    # Dev-friendly schema creation (migrations are available for real upgrades)
    Base.metadata.create_all(bind=engine)


app.include_router(inventory_router)
app.include_router(transfers_router)
app.include_router(sales_router)
app.include_router(billing_router)


@app.get("/health")
def health():
    return {"ok": True}
