# backend/siparis_nlu/routers/nlu.py
"""
NLU denetim uçları: intent kayıtları, temsilci geri bildirimi ve
aday arama / çıkarım için hata ayıklama endpoint'leri.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from ..core.deps import get_container, get_feedback_recorder, get_orchestrator, get_tenant_id
from ..schemas.order import (
    ChatTurn,
    ExtractionProbeResponse,
    FeedbackRequest,
    MenuCandidate,
    OrderIntentDto,
    TextProbeRequest,
)
from ..services.container import ServiceContainer
from ..services.nlu.candidate_retriever import retrieve, retrieve_options
from ..services.nlu.feedback import FeedbackRecorder
from ..services.nlu.orchestrator import NluOrchestrator

router = APIRouter(prefix="/nlu", tags=["NLU"])


@router.get("/conversations/{conversation_id}/intents", response_model=List[OrderIntentDto])
async def list_intents(
    conversation_id: str,
    limit: Optional[int] = Query(None, ge=1, le=500),
    tenant_id: str = Depends(get_tenant_id),
    orchestrator: NluOrchestrator = Depends(get_orchestrator),
):
    """Konuşmanın intent kayıtları, oluşturulma sırasıyla (denetim / tekrar oynatma)."""
    return await orchestrator.list_intents(tenant_id, conversation_id, limit=limit)


@router.post("/intents/{intent_id}/feedback", response_model=OrderIntentDto)
async def submit_feedback(
    intent_id: str,
    payload: FeedbackRequest,
    tenant_id: str = Depends(get_tenant_id),
    recorder: FeedbackRecorder = Depends(get_feedback_recorder),
):
    """
    Temsilcinin çıkarım doğruluğu hakkındaki kararı.
    Kayıt yoksa 404, daha önce işaretlenmişse 409.
    """
    return await recorder.record_feedback(intent_id, payload.feedback, tenant_id=tenant_id)


@router.post("/test/candidates", response_model=List[MenuCandidate])
async def test_candidates(
    payload: TextProbeRequest,
    tenant_id: str = Depends(get_tenant_id),
    container: ServiceContainer = Depends(get_container),
):
    index = container.registry.get(tenant_id)
    return retrieve(payload.text, index, top_k=container.config.NLU_CANDIDATE_TOP_K)


@router.post("/test/extract", response_model=ExtractionProbeResponse)
async def test_extract(
    payload: TextProbeRequest,
    tenant_id: str = Depends(get_tenant_id),
    container: ServiceContainer = Depends(get_container),
):
    """Aday arama + çıkarım; taslak siparişe ve intent kayıtlarına dokunmaz."""
    index = container.registry.get(tenant_id)
    top_k = container.config.NLU_CANDIDATE_TOP_K
    candidates = retrieve(payload.text, index, top_k=top_k)
    outcome = await container.invoker.run(
        [ChatTurn(role="user", text=payload.text)],
        [],
        candidates,
        index=index,
        option_hints=retrieve_options(payload.text, index, top_k=top_k),
    )
    return ExtractionProbeResponse(
        candidates=candidates,
        extraction=outcome.data,
        fallback=outcome.fallback,
        audit_reason=outcome.audit_reason,
    )
