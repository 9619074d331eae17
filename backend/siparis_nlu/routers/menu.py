# backend/siparis_nlu/routers/menu.py
from fastapi import APIRouter, Depends, HTTPException, status

from ..core.deps import get_registry, get_tenant_id
from ..schemas.menu import CanonicalMenuExport, MenuIndexSummary
from ..services.nlu.menu_index import MenuIndexRegistry

router = APIRouter(prefix="/menu", tags=["Menu"])


@router.post("/publish", response_model=MenuIndexSummary, response_model_by_alias=True)
async def publish_menu(
    export: CanonicalMenuExport,
    tenant_id: str = Depends(get_tenant_id),
    registry: MenuIndexRegistry = Depends(get_registry),
):
    """
    Yayınlanan menü dışa aktarımını alır ve tenant'ın aday arama indeksini yeniden kurar.
    Daha eski bir versiyon gelirse mevcut indeks korunur.
    """
    if export.tenant.id != tenant_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Menü tenant'ı ({export.tenant.id}) X-Tenant-Id ({tenant_id}) ile uyuşmuyor",
        )
    index = registry.publish(export)
    return index.summary()


@router.get("/index", response_model=MenuIndexSummary, response_model_by_alias=True)
async def menu_index_summary(
    tenant_id: str = Depends(get_tenant_id),
    registry: MenuIndexRegistry = Depends(get_registry),
):
    return registry.get(tenant_id).summary()
