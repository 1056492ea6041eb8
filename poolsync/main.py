"""Pool Sync FastAPI application.

Creates the service, wires routes, configures logging and exposes health and
Prometheus metrics endpoints. Run with ``uvicorn poolsync.main:app``.
"""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from poolsync.api.routes import router
from poolsync.core.config import settings
from poolsync.core.logging import setup_logging
from poolsync.metrics.prometheus import metrics_router
from poolsync.services.audit import AuditSuppressor
from poolsync.services.manager import LoopManager
from poolsync.services.polling import PollingRegistry, PollingSignal
from poolsync.services.pool_applier import PoolApplier
from poolsync.services.tmsh import TmshRunner


def build_services(app: FastAPI) -> LoopManager:
    """Create the process-wide manager and auditor and attach them to ``app.state``."""
    applier = PoolApplier(TmshRunner(), retries=settings.apply_retries, backoff_s=settings.retry_backoff_s)
    manager = LoopManager(
        applier,
        polling=PollingRegistry(),
        signal=PollingSignal(settings.polling_signal_path),
    )
    app.state.manager = manager
    app.state.auditor = AuditSuppressor(manager.polling, manager.rebind)
    return manager


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan.

    A signal file left behind by a previous process is stale by definition,
    so it is cleared before any loop starts. On shutdown loops are stopped
    without deleting the pools they manage.
    """
    setup_logging()
    manager = build_services(app)
    manager.signal.clear()
    try:
        yield
    finally:
        await manager.shutdown()


app = FastAPI(title="Pool Sync", version="0.1.0", lifespan=lifespan)
app.include_router(router)
app.include_router(metrics_router)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Answer 422 without echoing the rejected input back."""
    errors = [{k: v for k, v in err.items() if k != "input"} for err in exc.errors()]
    return JSONResponse(status_code=422, content={"detail": jsonable_encoder(errors)})
