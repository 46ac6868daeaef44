"""Health check endpoints."""

from fastapi import APIRouter, Request
from sqlalchemy import text

from clinic_os import __version__

router = APIRouter()


@router.get("/health")
async def health_check() -> dict:
    """Basic health check."""
    return {
        "status": "healthy",
        "service": "clinic-os",
        "version": __version__,
    }


@router.get("/health/ready")
async def readiness_check(request: Request) -> dict:
    """Readiness check - verifies the session store is reachable."""
    service = getattr(request.app.state, "scheduling_service", None)
    if service is None:
        return {"status": "not_ready", "errors": ["Scheduling service not initialized"]}

    try:
        async with service.session_factory() as db:
            await db.execute(text("SELECT 1"))
    except Exception as e:
        return {"status": "not_ready", "errors": [f"Database check failed: {e}"]}

    return {"status": "ready"}


@router.get("/health/live")
async def liveness_check() -> dict:
    """Liveness check - basic process health."""
    return {"status": "alive"}
