"""Order intent kayıtlarının kalıcı deposu.

Her işlenen mesaj için tek bir kayıt yazılır; kayıt sonradan yalnızca
`agent_feedback` alanı üzerinden, bir kez güncellenebilir.
"""
from __future__ import annotations

import asyncio
from typing import Dict, List, Optional

from databases import Database

from ..core.errors import AlreadyRecorded, NotFound
from ..schemas.order import AgentFeedback, ExtractedOrderData, OrderIntentDto

INSERT_INTENT = """
INSERT INTO order_intents (
    id, tenant_id, conversation_id, last_user_message_id, extracted_json,
    confidence, needs_clarification, clarification_question, agent_feedback,
    audit_reason, created_at
)
VALUES (
    :id, :tenant_id, :conversation_id, :last_user_message_id, :extracted_json,
    :confidence, :needs_clarification, :clarification_question, :agent_feedback,
    :audit_reason, :created_at
)
"""

SELECT_COLUMNS = """
SELECT id, tenant_id, conversation_id, last_user_message_id, extracted_json,
       confidence, needs_clarification, clarification_question, agent_feedback,
       audit_reason, created_at
FROM order_intents
"""

# Koşullu güncelleme: aynı anda gelen iki geri bildirimden yalnızca biri yazılır
SET_FEEDBACK = """
UPDATE order_intents
SET agent_feedback = :feedback
WHERE id = :id AND agent_feedback IS NULL
RETURNING id
"""


def _row_to_dto(row) -> OrderIntentDto:
    data = dict(row._mapping) if hasattr(row, "_mapping") else dict(row)
    return OrderIntentDto(
        id=data["id"],
        tenant_id=data["tenant_id"],
        conversation_id=data["conversation_id"],
        last_user_message_id=data["last_user_message_id"],
        extracted_json=ExtractedOrderData.model_validate_json(data["extracted_json"]),
        confidence=float(data["confidence"]),
        needs_clarification=bool(data["needs_clarification"]),
        clarification_question=data["clarification_question"],
        agent_feedback=data["agent_feedback"],
        audit_reason=data["audit_reason"],
        created_at=data["created_at"],
    )


class OrderIntentRepository:
    """Depo arayüzü; orkestratör ve geri bildirim kaydedici bu metotları kullanır."""

    async def insert(self, intent: OrderIntentDto) -> OrderIntentDto:
        raise NotImplementedError

    async def get(self, intent_id: str) -> Optional[OrderIntentDto]:
        raise NotImplementedError

    async def list_for_conversation(
        self, tenant_id: str, conversation_id: str, limit: Optional[int] = None
    ) -> List[OrderIntentDto]:
        raise NotImplementedError

    async def set_feedback(
        self,
        intent_id: str,
        feedback: AgentFeedback,
        tenant_id: Optional[str] = None,
    ) -> OrderIntentDto:
        raise NotImplementedError


class DatabaseIntentRepository(OrderIntentRepository):
    def __init__(self, db: Database) -> None:
        self.db = db

    async def insert(self, intent: OrderIntentDto) -> OrderIntentDto:
        await self.db.execute(
            INSERT_INTENT,
            {
                "id": intent.id,
                "tenant_id": intent.tenant_id,
                "conversation_id": intent.conversation_id,
                "last_user_message_id": intent.last_user_message_id,
                "extracted_json": intent.extracted_json.model_dump_json(by_alias=True),
                "confidence": intent.confidence,
                "needs_clarification": intent.needs_clarification,
                "clarification_question": intent.clarification_question,
                "agent_feedback": intent.agent_feedback,
                "audit_reason": intent.audit_reason,
                "created_at": intent.created_at,
            },
        )
        return intent

    async def get(self, intent_id: str) -> Optional[OrderIntentDto]:
        row = await self.db.fetch_one(SELECT_COLUMNS + " WHERE id = :id", {"id": intent_id})
        return _row_to_dto(row) if row else None

    async def list_for_conversation(
        self, tenant_id: str, conversation_id: str, limit: Optional[int] = None
    ) -> List[OrderIntentDto]:
        rows = await self.db.fetch_all(
            SELECT_COLUMNS + " WHERE tenant_id = :tenant_id AND conversation_id = :conversation_id"
            " ORDER BY created_at ASC, id ASC",
            {"tenant_id": tenant_id, "conversation_id": conversation_id},
        )
        intents = [_row_to_dto(row) for row in rows]
        return intents[-limit:] if limit else intents

    async def set_feedback(
        self,
        intent_id: str,
        feedback: AgentFeedback,
        tenant_id: Optional[str] = None,
    ) -> OrderIntentDto:
        async with self.db.transaction():
            existing = await self.get(intent_id)
            if existing is None or (tenant_id is not None and existing.tenant_id != tenant_id):
                raise NotFound(intent_id)
            updated = await self.db.fetch_one(SET_FEEDBACK, {"id": intent_id, "feedback": feedback})
            if updated is None:
                raise AlreadyRecorded(intent_id)
        return existing.model_copy(update={"agent_feedback": feedback})


class InMemoryIntentRepository(OrderIntentRepository):
    """Yerel geliştirme ve testler için; süreç kapanınca kayıtlar kaybolur."""

    def __init__(self) -> None:
        self._rows: Dict[str, OrderIntentDto] = {}
        self._lock = asyncio.Lock()

    async def insert(self, intent: OrderIntentDto) -> OrderIntentDto:
        async with self._lock:
            if intent.id in self._rows:
                raise ValueError(f"duplicate order intent id '{intent.id}'")
            self._rows[intent.id] = intent
        return intent

    async def get(self, intent_id: str) -> Optional[OrderIntentDto]:
        return self._rows.get(intent_id)

    async def list_for_conversation(
        self, tenant_id: str, conversation_id: str, limit: Optional[int] = None
    ) -> List[OrderIntentDto]:
        rows = [
            row
            for row in self._rows.values()
            if row.tenant_id == tenant_id and row.conversation_id == conversation_id
        ]
        # dict ekleme sırasını korur; aynı created_at değerlerinde de sıra sabit kalır
        rows = sorted(rows, key=lambda row: row.created_at)
        return rows[-limit:] if limit else rows

    async def set_feedback(
        self,
        intent_id: str,
        feedback: AgentFeedback,
        tenant_id: Optional[str] = None,
    ) -> OrderIntentDto:
        async with self._lock:
            existing = self._rows.get(intent_id)
            if existing is None or (tenant_id is not None and existing.tenant_id != tenant_id):
                raise NotFound(intent_id)
            if existing.agent_feedback is not None:
                raise AlreadyRecorded(intent_id)
            updated = existing.model_copy(update={"agent_feedback": feedback})
            self._rows[intent_id] = updated
            return updated
