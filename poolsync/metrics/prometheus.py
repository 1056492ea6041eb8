from fastapi import APIRouter, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

metrics_router = APIRouter()

TICKS = Counter("poolsync_ticks_total", "Reconciliation ticks by outcome", ["outcome"])
APPLY_ACTIONS = Counter("poolsync_apply_total", "Pool mutations issued by the applier", ["action"])
REGISTRY_LATENCY = Histogram("poolsync_registry_latency_seconds", "Registry read latency seconds")
ACTIVE_LOOPS = Gauge("poolsync_active_loops", "Pools currently under reconciliation")
AUDITS = Counter("poolsync_audits_total", "Audit invocations by decision", ["decision"])


@metrics_router.get("/metrics")
async def metrics():
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
