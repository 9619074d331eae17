# backend/siparis_nlu/routers/conversations.py
"""
Konuşma kanalından gelen mesajlar ve konuşma olayları.

Mesaj işleme hiçbir zaman hata fırlatmaz: model/servis sorunları
netleştirme sorusu olarak geri döner.
"""
from fastapi import APIRouter, Depends

from ..core.deps import get_orchestrator, get_tenant_id
from ..schemas.order import DraftOrderResponse, InboundMessageRequest, OrchestrationResponse
from ..services.nlu.orchestrator import NluOrchestrator

router = APIRouter(prefix="/conversations", tags=["Conversations"])


@router.post("/{conversation_id}/messages", response_model=OrchestrationResponse)
async def inbound_message(
    conversation_id: str,
    payload: InboundMessageRequest,
    tenant_id: str = Depends(get_tenant_id),
    orchestrator: NluOrchestrator = Depends(get_orchestrator),
):
    result = await orchestrator.process_message(
        tenant_id,
        conversation_id,
        payload.message_id,
        payload.text,
        prior_turns=payload.prior_turns,
    )
    return result.to_response()


@router.post("/{conversation_id}/close")
async def close_conversation(
    conversation_id: str,
    tenant_id: str = Depends(get_tenant_id),
    orchestrator: NluOrchestrator = Depends(get_orchestrator),
):
    """Konuşma bitti; süren çıkarımın sonucu atılır."""
    await orchestrator.close_conversation(tenant_id, conversation_id)
    return {"ok": True, "conversationId": conversation_id, "event": "closed"}


@router.post("/{conversation_id}/reassign")
async def reassign_conversation(
    conversation_id: str,
    tenant_id: str = Depends(get_tenant_id),
    orchestrator: NluOrchestrator = Depends(get_orchestrator),
):
    """Konuşma bottan insan temsilciye devredildi."""
    await orchestrator.reassign_conversation(tenant_id, conversation_id)
    return {"ok": True, "conversationId": conversation_id, "event": "reassigned"}


@router.post("/{conversation_id}/freeze")
async def freeze_conversation(
    conversation_id: str,
    tenant_id: str = Depends(get_tenant_id),
    orchestrator: NluOrchestrator = Depends(get_orchestrator),
):
    """Sipariş onaylandı veya iptal edildi; taslak artık değişmez."""
    await orchestrator.freeze_conversation(tenant_id, conversation_id)
    return {"ok": True, "conversationId": conversation_id, "event": "frozen"}


@router.get("/{conversation_id}/draft", response_model=DraftOrderResponse)
async def get_draft(
    conversation_id: str,
    tenant_id: str = Depends(get_tenant_id),
    orchestrator: NluOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.get_draft(tenant_id, conversation_id)
