from fastapi import APIRouter, HTTPException, Request
from datetime import datetime
from ..core.config import settings

router = APIRouter(prefix="", tags=["Sistem"])


@router.get("/health")
async def health(request: Request):
    """
    Production-ready health check endpoint.
    Returns 200 if healthy, 503 if unhealthy.
    """
    checks = {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "service": settings.APP_NAME,
        "version": settings.VERSION,
        "env": settings.ENV,
        "database": "unknown",
        "menus": 0,
    }

    container = getattr(request.app.state, "container", None)
    database = container.database if container is not None else None
    if database is None:
        checks["database"] = "memory"
    else:
        try:
            await database.fetch_one("SELECT 1;")
            checks["database"] = "connected"
        except Exception as e:
            checks["database"] = "disconnected"
            checks["status"] = "unhealthy"
            checks["database_error"] = str(e)

    if container is not None:
        checks["menus"] = container.registry.tenant_count()

    if checks["status"] == "unhealthy":
        raise HTTPException(status_code=503, detail=checks)

    return checks


@router.get("/version")
async def version():
    return {"app": settings.APP_NAME, "version": settings.VERSION, "env": settings.ENV}
