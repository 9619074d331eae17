"""Orchestrator: drives one inbound message through retrieval, extraction and reconciliation.

Messages of one conversation are processed strictly one at a time (the slot
lock); different conversations run concurrently. The model call is the only
long suspension point, and external events (close, reassign, freeze) never
wait for it: they flip flags on the slot and the in-flight result is checked
against those flags before anything is committed.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from ...core.errors import MenuIndexStale, ReconciliationConflict
from ...core.logging_config import get_logger
from ...db.intent_repository import OrderIntentRepository
from ...schemas.order import (
    ChatTurn,
    DraftOrderItem,
    DraftOrderResponse,
    ExtractedOrderData,
    OrchestrationResponse,
    OrderIntentDto,
)
from ..gateways import MessagingGateway, OrderManagementGateway
from .candidate_retriever import DEFAULT_TOP_K, retrieve, retrieve_options
from .conversation_store import (
    ACCEPTED,
    CLARIFYING,
    CLOSED,
    EXTRACTING,
    IDLE,
    ConversationSlot,
    ConversationStore,
)
from .extraction import FALLBACK_QUESTION, UNRESOLVED_FIELD, ExtractionInvoker
from .menu_index import MenuIndex, MenuIndexRegistry
from .reconciler import CONFIDENCE_THRESHOLD, ReconcileResult, compute_total, derive_missing_fields, reconcile

logger = get_logger(__name__)

STATUS_ACCEPTED = "accepted"
STATUS_CLARIFYING = "clarifying"
STATUS_SKIPPED = "skipped"
STATUS_DISCARDED = "discarded"
STATUS_FROZEN = "frozen"

MENU_UNAVAILABLE_FIELD = "menu_unavailable"
MENU_NOT_READY_QUESTION = (
    "Menümüz şu anda güncelleniyor. Birkaç dakika içinde siparişinizi tekrar yazar mısınız?"
)
UNRESOLVED_QUESTION = "Menümüzde \"{phrase}\" bulamadım. Başka bir ürün ister misiniz?"
OPTION_REQUIRED_QUESTION = "{item} için {group} seçimi yapar mısınız? ({options})"
OPTION_MAX_QUESTION = "{item} için {group} en fazla {max_select} tane seçilebilir. Hangilerini istersiniz?"
ITEM_UNAVAILABLE_QUESTION = "{item} şu anda menümüzde yok. Yerine başka bir şey ister misiniz?"
ORDER_SUMMARY_TEMPLATE = "Siparişinizi aldım:\n\n{lines}\n\nToplam: {total:.2f} TL\n\nOnaylıyor musunuz?"


@dataclass
class OrchestrationResult:
    status: str
    conversation_id: str
    intent: Optional[OrderIntentDto] = None
    draft_order: List[DraftOrderItem] = field(default_factory=list)
    missing_fields: List[str] = field(default_factory=list)
    total_price: float = 0.0
    reply_text: Optional[str] = None

    def to_response(self) -> OrchestrationResponse:
        return OrchestrationResponse(
            status=self.status,
            conversation_id=self.conversation_id,
            intent=self.intent,
            draft_order=self.draft_order,
            missing_fields=self.missing_fields,
            total_price=self.total_price,
            reply_text=self.reply_text,
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def clarification_for(extracted: ExtractedOrderData) -> str:
    """The question to send when the gate rejects an extraction."""
    if extracted.clarification_question:
        return extracted.clarification_question
    for missing in extracted.missing_fields:
        prefix = f"{UNRESOLVED_FIELD}:"
        if missing.startswith(prefix) and len(missing) > len(prefix):
            return UNRESOLVED_QUESTION.format(phrase=missing[len(prefix):])
    return FALLBACK_QUESTION


def follow_up_for(missing_fields: Sequence[str], index: Optional[MenuIndex]) -> Optional[str]:
    """Turn derived missing fields ("<itemId>:<group>[:max]") into one customer-facing question."""
    questions: List[str] = []
    for missing in missing_fields:
        exceeded = missing.endswith(":max")
        body = missing[: -len(":max")] if exceeded else missing
        item_id, _, group_name = body.partition(":")
        entry = index.item(item_id) if index is not None else None
        item_name = entry.name if entry is not None else item_id

        if group_name == "unavailable" and entry is None:
            questions.append(ITEM_UNAVAILABLE_QUESTION.format(item=item_name))
            continue
        group = index.find_group(item_id, group_name) if index is not None else None
        if group is None:
            continue
        if exceeded:
            questions.append(
                OPTION_MAX_QUESTION.format(item=item_name, group=group.name, max_select=group.effective_max)
            )
        else:
            options = ", ".join(option.name for option in group.options)
            questions.append(OPTION_REQUIRED_QUESTION.format(item=item_name, group=group.name, options=options))
    return " ".join(questions) if questions else None


def order_summary_for(
    draft_order: Sequence[DraftOrderItem], index: Optional[MenuIndex], total_price: float
) -> Optional[str]:
    """Confirmation text listing every draft line with its options and the order total."""
    if not draft_order:
        return None
    lines: List[str] = []
    for line in draft_order:
        entry = index.item(line.menu_item_id) if index is not None else None
        text = f"• {line.qty}x {entry.name if entry is not None else line.menu_item_id}"
        options = [selection.option_name for selection in line.option_selections]
        if options:
            text += f" ({', '.join(options)})"
        lines.append(text)
    return ORDER_SUMMARY_TEMPLATE.format(lines="\n".join(lines), total=total_price)


class NluOrchestrator:
    def __init__(
        self,
        registry: MenuIndexRegistry,
        invoker: ExtractionInvoker,
        repository: OrderIntentRepository,
        order_gateway: OrderManagementGateway,
        messaging_gateway: MessagingGateway,
        store: Optional[ConversationStore] = None,
        threshold: float = CONFIDENCE_THRESHOLD,
        top_k: int = DEFAULT_TOP_K,
    ) -> None:
        self.registry = registry
        self.invoker = invoker
        self.repository = repository
        self.order_gateway = order_gateway
        self.messaging_gateway = messaging_gateway
        self.store = store or ConversationStore()
        self.threshold = threshold
        self.top_k = top_k

    # ------------------------------------------------------------------
    # Inbound messages
    # ------------------------------------------------------------------
    async def process_message(
        self,
        tenant_id: str,
        conversation_id: str,
        message_id: str,
        text: str,
        prior_turns: Sequence[ChatTurn] = (),
    ) -> OrchestrationResult:
        slot = await self.store.get(tenant_id, conversation_id)
        log = logger.bind(tenant_id=tenant_id, conversation_id=conversation_id, message_id=message_id)
        try:
            async with slot.lock:
                return await self._process_locked(slot, message_id, text, prior_turns)
        except Exception:
            # Konuşma kanalına asla hata sızmaz
            log.exception("message_processing_failed")
            if slot.state == EXTRACTING:
                slot.state = IDLE
            return OrchestrationResult(
                status=STATUS_CLARIFYING,
                conversation_id=conversation_id,
                draft_order=list(slot.draft_order),
                reply_text=FALLBACK_QUESTION,
            )

    async def _process_locked(
        self,
        slot: ConversationSlot,
        message_id: str,
        text: str,
        prior_turns: Sequence[ChatTurn],
    ) -> OrchestrationResult:
        log = logger.bind(tenant_id=slot.tenant_id, conversation_id=slot.conversation_id, message_id=message_id)

        if not slot.accepting_messages:
            log.info("message_ignored", reason="closed" if slot.closed else "reassigned")
            return self._result(slot, STATUS_DISCARDED)
        if slot.frozen:
            log.info("message_ignored", reason="frozen")
            return self._result(slot, STATUS_FROZEN)

        await self._hydrate(slot)
        turns = list(prior_turns) + [ChatTurn(role="user", text=text)]

        try:
            index = self.registry.get(slot.tenant_id)
        except MenuIndexStale:
            log.warning("menu_index_stale")
            return await self._menu_not_ready(slot, message_id)

        candidates = retrieve(text, index, top_k=self.top_k)
        if not candidates and not slot.draft_order:
            log.info("message_skipped", reason="not_order_related")
            return self._result(slot, STATUS_SKIPPED, index=index)
        option_hints = retrieve_options(text, index, top_k=self.top_k)

        generation, baseline = slot.snapshot()
        slot.state = EXTRACTING
        outcome = await self.invoker.run(turns, baseline, candidates, index=index, option_hints=option_hints)

        if not slot.accepting_messages:
            # Çıkarım sürerken konuşma kapandı / devredildi: sonuç atılır, kayıt yazılmaz
            log.info("extraction_discarded", reason="closed" if slot.closed else "reassigned")
            return self._result(slot, STATUS_DISCARDED, index=index)

        result = reconcile(baseline, outcome.data, index=index, threshold=self.threshold)
        if not result.accepted:
            return await self._clarify(slot, message_id, outcome.data, result, outcome.audit_reason, index)

        try:
            self._check_generation(slot, generation)
        except ReconciliationConflict as e:
            log.warning("reconciliation_conflict", error=str(e))
            intent = await self._record(
                slot,
                message_id,
                outcome.data,
                needs_clarification=False,
                audit_reason=f"reconciliation_conflict: {e}",
            )
            self._settle(slot)
            return self._result(slot, STATUS_DISCARDED, index=index, intent=intent)

        return await self._accept(slot, message_id, outcome.data, result, outcome.audit_reason, index)

    async def _accept(
        self,
        slot: ConversationSlot,
        message_id: str,
        extracted: ExtractedOrderData,
        result: ReconcileResult,
        audit_reason: Optional[str],
        index: MenuIndex,
    ) -> OrchestrationResult:
        follow_up = follow_up_for(result.missing_fields, index)
        slot.commit(result.draft_order)
        slot.state = ACCEPTED
        intent = await self._record(
            slot,
            message_id,
            extracted,
            needs_clarification=follow_up is not None,
            clarification_question=follow_up,
            audit_reason=audit_reason,
        )
        await self.order_gateway.apply_draft(slot.tenant_id, slot.conversation_id, slot.draft_order, result.total_price)
        reply = follow_up or order_summary_for(slot.draft_order, index, result.total_price)
        if reply:
            await self.messaging_gateway.send_text(slot.tenant_id, slot.conversation_id, reply)
        logger.info(
            "extraction_accepted",
            tenant_id=slot.tenant_id,
            conversation_id=slot.conversation_id,
            lines=len(slot.draft_order),
            total_price=result.total_price,
            follow_up=follow_up is not None,
        )
        self._settle(slot)
        return OrchestrationResult(
            status=STATUS_ACCEPTED,
            conversation_id=slot.conversation_id,
            intent=intent,
            draft_order=list(slot.draft_order),
            missing_fields=list(result.missing_fields),
            total_price=result.total_price,
            reply_text=reply,
        )

    async def _clarify(
        self,
        slot: ConversationSlot,
        message_id: str,
        extracted: ExtractedOrderData,
        result: ReconcileResult,
        audit_reason: Optional[str],
        index: MenuIndex,
    ) -> OrchestrationResult:
        question = clarification_for(extracted)
        slot.state = CLARIFYING
        intent = await self._record(
            slot,
            message_id,
            extracted,
            needs_clarification=True,
            clarification_question=question,
            audit_reason=audit_reason,
        )
        await self.messaging_gateway.send_text(slot.tenant_id, slot.conversation_id, question)
        logger.info(
            "extraction_needs_clarification",
            tenant_id=slot.tenant_id,
            conversation_id=slot.conversation_id,
            reason=result.gate_reason,
            confidence=extracted.confidence,
        )
        self._settle(slot)
        return OrchestrationResult(
            status=STATUS_CLARIFYING,
            conversation_id=slot.conversation_id,
            intent=intent,
            draft_order=list(slot.draft_order),
            missing_fields=list(extracted.missing_fields),
            total_price=result.total_price,
            reply_text=question,
        )

    async def _menu_not_ready(self, slot: ConversationSlot, message_id: str) -> OrchestrationResult:
        extracted = ExtractedOrderData(
            items=[],
            missing_fields=[MENU_UNAVAILABLE_FIELD],
            clarification_question=MENU_NOT_READY_QUESTION,
            confidence=0.0,
        )
        slot.state = CLARIFYING
        intent = await self._record(
            slot,
            message_id,
            extracted,
            needs_clarification=True,
            clarification_question=MENU_NOT_READY_QUESTION,
            audit_reason="menu_index_stale",
        )
        await self.messaging_gateway.send_text(slot.tenant_id, slot.conversation_id, MENU_NOT_READY_QUESTION)
        self._settle(slot)
        return OrchestrationResult(
            status=STATUS_CLARIFYING,
            conversation_id=slot.conversation_id,
            intent=intent,
            draft_order=list(slot.draft_order),
            missing_fields=[MENU_UNAVAILABLE_FIELD],
            reply_text=MENU_NOT_READY_QUESTION,
        )

    @staticmethod
    def _settle(slot: ConversationSlot) -> None:
        # close / reassign may have landed while collaborators were awaited
        if slot.accepting_messages:
            slot.state = IDLE

    @staticmethod
    def _check_generation(slot: ConversationSlot, generation: int) -> None:
        if slot.frozen:
            raise ReconciliationConflict("order was frozen while extracting")
        if slot.generation != generation:
            raise ReconciliationConflict(
                f"draft moved from generation {generation} to {slot.generation} while extracting"
            )

    async def _record(
        self,
        slot: ConversationSlot,
        message_id: str,
        extracted: ExtractedOrderData,
        needs_clarification: bool,
        clarification_question: Optional[str] = None,
        audit_reason: Optional[str] = None,
    ) -> OrderIntentDto:
        intent = OrderIntentDto(
            id=uuid.uuid4().hex,
            tenant_id=slot.tenant_id,
            conversation_id=slot.conversation_id,
            last_user_message_id=message_id,
            extracted_json=extracted,
            confidence=extracted.confidence,
            needs_clarification=needs_clarification,
            clarification_question=clarification_question,
            audit_reason=audit_reason,
            created_at=_utcnow(),
        )
        return await self.repository.insert(intent)

    async def _hydrate(self, slot: ConversationSlot) -> None:
        if slot.hydrated:
            return
        slot.draft_order = list(await self.order_gateway.get_draft(slot.tenant_id, slot.conversation_id))
        slot.hydrated = True
        if slot.draft_order:
            logger.info(
                "draft_hydrated",
                tenant_id=slot.tenant_id,
                conversation_id=slot.conversation_id,
                lines=len(slot.draft_order),
            )

    def _result(
        self,
        slot: ConversationSlot,
        status: str,
        index: Optional[MenuIndex] = None,
        intent: Optional[OrderIntentDto] = None,
    ) -> OrchestrationResult:
        index = index or self.registry.peek(slot.tenant_id)
        return OrchestrationResult(
            status=status,
            conversation_id=slot.conversation_id,
            intent=intent,
            draft_order=list(slot.draft_order),
            missing_fields=derive_missing_fields(slot.draft_order, index),
            total_price=compute_total(slot.draft_order, index),
        )

    # ------------------------------------------------------------------
    # External events
    # ------------------------------------------------------------------
    async def close_conversation(self, tenant_id: str, conversation_id: str) -> None:
        slot = await self.store.get(tenant_id, conversation_id)
        slot.closed = True
        slot.state = CLOSED
        logger.info("conversation_closed", tenant_id=tenant_id, conversation_id=conversation_id)

    async def reassign_conversation(self, tenant_id: str, conversation_id: str) -> None:
        slot = await self.store.get(tenant_id, conversation_id)
        slot.reassigned = True
        slot.state = CLOSED
        logger.info("conversation_reassigned", tenant_id=tenant_id, conversation_id=conversation_id)

    async def freeze_conversation(self, tenant_id: str, conversation_id: str) -> None:
        slot = await self.store.get(tenant_id, conversation_id)
        slot.frozen = True
        slot.generation += 1
        logger.info("conversation_frozen", tenant_id=tenant_id, conversation_id=conversation_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    async def get_draft(self, tenant_id: str, conversation_id: str) -> DraftOrderResponse:
        slot = await self.store.get(tenant_id, conversation_id)
        async with slot.lock:
            await self._hydrate(slot)
            index = self.registry.peek(tenant_id)
            return DraftOrderResponse(
                conversation_id=conversation_id,
                state=slot.state,
                frozen=slot.frozen,
                items=list(slot.draft_order),
                total_price=compute_total(slot.draft_order, index),
                missing_fields=derive_missing_fields(slot.draft_order, index),
            )

    async def list_intents(
        self, tenant_id: str, conversation_id: str, limit: Optional[int] = None
    ) -> List[OrderIntentDto]:
        return await self.repository.list_for_conversation(tenant_id, conversation_id, limit=limit)
