# backend/siparis_nlu/core/deps.py
from fastapi import Header, HTTPException, Request, status

from ..services.container import ServiceContainer
from ..services.nlu.feedback import FeedbackRecorder
from ..services.nlu.menu_index import MenuIndexRegistry
from ..services.nlu.orchestrator import NluOrchestrator


# ---------------------------
# Tenant
# ---------------------------
def get_tenant_id(x_tenant_id: str = Header(None, alias="X-Tenant-Id")) -> str:
    """
    İstekteki tenant'ı döndürür.
    DefaultTenantMiddleware dev ortamında header'ı enjekte eder; prod'da eksikse 400 döner.
    """
    tenant_id = (x_tenant_id or "").strip()
    if not tenant_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="X-Tenant-Id header zorunlu")
    return tenant_id


# ---------------------------
# Servisler (app.state.container)
# ---------------------------
def get_container(request: Request) -> ServiceContainer:
    container = getattr(request.app.state, "container", None)
    if container is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Servisler hazır değil")
    return container


def get_orchestrator(request: Request) -> NluOrchestrator:
    return get_container(request).orchestrator


def get_registry(request: Request) -> MenuIndexRegistry:
    return get_container(request).registry


def get_feedback_recorder(request: Request) -> FeedbackRecorder:
    return get_container(request).feedback
