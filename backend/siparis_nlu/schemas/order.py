"""Taslak sipariş, çıkarım ve intent kaydı modelleri."""
from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import ConfigDict, Field
from pydantic.alias_generators import to_camel

from .menu import CamelModel

ItemAction = Literal["add", "remove", "keep"]
AgentFeedback = Literal["correct", "incorrect"]


class OptionSelection(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    group_name: str
    option_name: str


class OrderExtra(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    name: str
    qty: int = Field(default=1, ge=1)


class DraftOrderItem(CamelModel):
    """Konuşmaya ait taslak siparişin tek satırı."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    menu_item_id: str
    qty: int = Field(ge=1)
    option_selections: List[OptionSelection] = Field(default_factory=list)
    extras: List[OrderExtra] = Field(default_factory=list)
    notes: Optional[str] = None


class ExtractedOrderItem(CamelModel):
    menu_item_id: str = Field(min_length=1)
    qty: int = Field(default=1, ge=1)
    option_selections: List[OptionSelection] = Field(default_factory=list)
    extras: List[OrderExtra] = Field(default_factory=list)
    notes: Optional[str] = None
    action: ItemAction = "add"
    item_confidence: float = Field(default=1.0, ge=0.0, le=1.0)


class ExtractedOrderData(CamelModel):
    """Dil modelinden dönen, doğrulanmış sipariş çıkarımı."""

    items: List[ExtractedOrderItem] = Field(default_factory=list)
    missing_fields: List[str] = Field(default_factory=list)
    clarification_question: Optional[str] = None
    confidence: float = Field(ge=0.0, le=1.0)
    order_notes: Optional[str] = None
    unresolved_items: List[str] = Field(default_factory=list)


class MenuCandidate(CamelModel):
    menu_item_id: str
    name: str
    category: str
    base_price: float
    synonyms_matched: List[str] = Field(default_factory=list)
    score: float


class ChatTurn(CamelModel):
    role: Literal["user", "assistant"]
    text: str


class OrderIntentDto(CamelModel):
    id: str
    tenant_id: str
    conversation_id: str
    last_user_message_id: str
    extracted_json: ExtractedOrderData
    confidence: float = Field(ge=0.0, le=1.0)
    needs_clarification: bool
    clarification_question: Optional[str] = None
    agent_feedback: Optional[AgentFeedback] = None
    audit_reason: Optional[str] = None
    created_at: datetime


# ---------- HTTP istek / yanıt modelleri ----------

class InboundMessageRequest(CamelModel):
    message_id: str = Field(min_length=1)
    text: str = Field(min_length=1)
    prior_turns: List[ChatTurn] = Field(default_factory=list)


class FeedbackRequest(CamelModel):
    feedback: AgentFeedback


class TextProbeRequest(CamelModel):
    text: str = Field(min_length=1)


class DraftOrderResponse(CamelModel):
    conversation_id: str
    state: str
    frozen: bool
    items: List[DraftOrderItem] = Field(default_factory=list)
    total_price: float = 0.0
    missing_fields: List[str] = Field(default_factory=list)


class OrchestrationResponse(CamelModel):
    status: str
    conversation_id: str
    intent: Optional[OrderIntentDto] = None
    draft_order: List[DraftOrderItem] = Field(default_factory=list)
    missing_fields: List[str] = Field(default_factory=list)
    total_price: float = 0.0
    reply_text: Optional[str] = None


class ExtractionProbeResponse(CamelModel):
    candidates: List[MenuCandidate] = Field(default_factory=list)
    extraction: ExtractedOrderData
    fallback: bool = False
    audit_reason: Optional[str] = None
