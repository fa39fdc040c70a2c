# /crm_dialer/routes/public.py

from datetime import datetime, timezone
from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from crm_dialer.config.settings import settings

# Unauthenticated operational endpoints: health probes and Prometheus metrics.

router = APIRouter()


@router.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": settings.service_name,
        "version": "1.0.0",
        "status": "operational",
        "environment": settings.environment,
    }


@router.get("/health", summary="Basic Health Check")
async def health_check():
    """Basic health check for load balancers."""
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc)}


@router.get("/health/live", summary="Liveness Probe")
async def liveness_check():
    return {"status": "alive"}


@router.get("/health/ready", summary="Readiness Probe")
async def readiness_check(request: Request):
    """Readiness probe: the bus and flow storage must answer, and the pipeline must be running."""
    state = request.app.state
    try:
        await state.bus.ping()
        await state.flow_repository.ping()
    except Exception as e:
        raise HTTPException(status_code=503, detail=f"Service not ready: {e}")

    if not state.dispatch_queue.running:
        raise HTTPException(status_code=503, detail="Service not ready: dispatch queue is stopped")

    return {
        "status": "ready",
        "dispatch_queue": {
            "depth": state.dispatch_queue.depth,
            "in_flight": state.dispatch_queue.in_flight,
        },
        "lead_updates": {
            "state": state.batch_processor.state,
            "pending": state.batch_processor.pending_count,
        },
    }


@router.get("/metrics", tags=["Monitoring"])
async def metrics():
    """Prometheus metrics endpoint."""
    return PlainTextResponse(generate_latest(), media_type=CONTENT_TYPE_LATEST)
