"""API routes for the Pool Sync service.

Bind and unbind are acknowledged immediately; the pool itself converges in
the background. Audit calls answer synchronously with the (possibly cleared)
snapshot.
"""
from __future__ import annotations

from logging import getLogger
from typing import List

from fastapi import APIRouter, HTTPException, Request, status

from poolsync.core.config import effective_interval_ms
from poolsync.models.schemas import (
    AuditSnapshot,
    BindAccepted,
    BindRequest,
    PollingEntry,
    PollingState,
    UnbindAccepted,
    UnbindRequest,
)
from poolsync.services.audit import AuditSuppressor
from poolsync.services.errors import AuditError, CredentialError
from poolsync.services.manager import LoopManager

log = getLogger("Pool-Sync.API")
router = APIRouter()


def _get_manager(request: Request) -> LoopManager:
    manager: LoopManager | None = getattr(request.app.state, "manager", None)
    if manager is None:
        raise HTTPException(status_code=503, detail="service is not initialised")
    return manager


def _get_auditor(request: Request) -> AuditSuppressor:
    auditor: AuditSuppressor | None = getattr(request.app.state, "auditor", None)
    if auditor is None:
        raise HTTPException(status_code=503, detail="service is not initialised")
    return auditor


@router.post("/bind", response_model=BindAccepted, status_code=status.HTTP_202_ACCEPTED)
async def bind(body: BindRequest, request: Request):
    """Start (or restart with new settings) synchronisation of one pool."""
    manager = _get_manager(request)
    try:
        await manager.bind(body)
    except CredentialError as e:
        log.warning("bind rejected: %s", e)
        raise HTTPException(status_code=400, detail=str(e))
    log.info("bind accepted for pool %s (service %s)", body.pool_name, body.service_name)
    entry = manager.polling.get(body.pool_name)
    return BindAccepted(
        pool_name=body.pool_name,
        state=entry.state if entry else PollingState.POLLING,
        poll_interval_ms=effective_interval_ms(body.poll_interval),
    )


@router.post("/unbind", response_model=UnbindAccepted, status_code=status.HTTP_202_ACCEPTED)
async def unbind(body: UnbindRequest, request: Request):
    """Stop synchronisation; the pool is removed in the background."""
    manager = _get_manager(request)
    stopped = await manager.unbind(body)
    log.info("unbind accepted for pool %s", body.pool_name)
    return UnbindAccepted(pool_name=body.pool_name, loop_stopped=stopped)


@router.post("/audit", response_model=AuditSnapshot)
async def audit(body: AuditSnapshot, request: Request):
    """Suppress the audit when the pool is polled, otherwise re-trigger it."""
    auditor = _get_auditor(request)
    try:
        return await auditor.audit(body)
    except AuditError as e:
        log.warning("audit rejected: %s", e)
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/pools", response_model=List[PollingEntry])
async def pools(request: Request):
    """Pools currently under reconciliation."""
    return _get_manager(request).entries()


@router.get("/health")
async def health_check():
    return {"status": "OK"}
