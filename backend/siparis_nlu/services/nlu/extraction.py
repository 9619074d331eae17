"""Extraction invoker: grounded structured extraction through a language model.

Builds a bounded prompt (recent turns, current draft order, ranked menu
candidates and the fixed output schema), calls the model once, retries once
with a corrective instruction when the answer breaks the contract, and
otherwise falls back to a generic clarification flagged for audit. It never
touches state outside its return value.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set

import httpx
from pydantic import ValidationError

from ...core.errors import SchemaValidationError, UpstreamTimeout
from ...core.logging_config import LogPerformance, get_logger
from ...llm.providers import LLMProvider
from ...schemas.order import ChatTurn, DraftOrderItem, ExtractedOrderData, MenuCandidate
from .candidate_retriever import OptionCandidate
from .menu_index import MenuIndex

logger = get_logger(__name__)

DEFAULT_HISTORY_TURNS = 6
DEFAULT_TIMEOUT_SECONDS = 10.0
UNRESOLVED_FIELD = "unresolved"
FALLBACK_QUESTION = (
    "Siparişinizi tam anlayamadım. Hangi üründen kaç adet istediğinizi "
    "biraz daha açık yazar mısınız?"
)

# Stable prefix so the provider can cache it across requests
SYSTEM_PROMPT_PREFIX = """Sen bir restoran sipariş asistanısın. Müşterinin son mesajından, konuşmanın geri kalanını ve mevcut taslak siparişi dikkate alarak sipariş değişikliklerini çıkar.

GÖREV:
1. Müşterinin mesajını analiz et
2. Sadece verilen MENÜ ADAYLARI veya MEVCUT TASLAK satırları içinden ürün seç
3. Miktarları, seçenekleri ve ekstra istekleri çıkar
4. Her satır için action belirle: add = yeni ürün ya da adet artışı, remove = satırı tamamen çıkar, keep = değişmeyen mevcut satır
5. Belirsizlik varsa clarificationQuestion ile sor

KURALLAR:
- menuItemId yalnızca listede köşeli parantez içinde verilen kimliklerden biri olabilir
- Menüde karşılığı olmayan istekleri unresolvedItems listesine yaz, uydurma kimlik kullanma
- Miktar belirtilmemişse 1 kabul et; miktar asla negatif olamaz
- "bir tane eksik" gibi azaltmalarda satırı remove et ve yeni adetle add et
- Sipariş geneline ait notları (ör. "zile basmayın") orderNotes alanına yaz
- Confidence skoru:
  - 0.9-1.0: Sipariş tamamen net
  - 0.7-0.9: Büyük oranda net, küçük varsayımlar var
  - 0.5-0.7: Belirsizlik var, onay gerekli
  - 0.0-0.5: Çok belirsiz, mutlaka soru sor
"""

CORRECTIVE_INSTRUCTION = (
    "Önceki yanıtın istenen JSON sözleşmesine uymadı ({error}). "
    "Yalnızca şemaya birebir uyan tek bir JSON nesnesi döndür. "
    "menuItemId değerleri yalnızca verilen listeden olmalı, qty en az 1 olmalı."
)

_OPTION_SELECTION_SCHEMA = {
    "type": "object",
    "properties": {
        "groupName": {"type": "string"},
        "optionName": {"type": "string"},
    },
    "required": ["groupName", "optionName"],
    "additionalProperties": False,
}

_EXTRA_SCHEMA = {
    "type": "object",
    "properties": {
        "name": {"type": "string"},
        "qty": {"type": "integer", "minimum": 1},
    },
    "required": ["name", "qty"],
    "additionalProperties": False,
}

LLM_EXTRACTION_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "items": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "menuItemId": {"type": "string", "description": "ID of the menu item"},
                    "qty": {"type": "integer", "minimum": 1},
                    "optionSelections": {"type": "array", "items": _OPTION_SELECTION_SCHEMA},
                    "extras": {"type": "array", "items": _EXTRA_SCHEMA},
                    "notes": {"type": ["string", "null"]},
                    "action": {"type": "string", "enum": ["add", "remove", "keep"]},
                    "itemConfidence": {"type": "number", "minimum": 0, "maximum": 1},
                },
                "required": [
                    "menuItemId",
                    "qty",
                    "optionSelections",
                    "extras",
                    "notes",
                    "action",
                    "itemConfidence",
                ],
                "additionalProperties": False,
            },
        },
        "missingFields": {"type": "array", "items": {"type": "string"}},
        "clarificationQuestion": {"type": ["string", "null"]},
        "confidence": {"type": "number", "minimum": 0, "maximum": 1},
        "orderNotes": {"type": ["string", "null"]},
        "unresolvedItems": {
            "type": "array",
            "items": {"type": "string"},
            "description": "Customer requests that match none of the provided menu candidates",
        },
    },
    "required": [
        "items",
        "missingFields",
        "clarificationQuestion",
        "confidence",
        "orderNotes",
        "unresolvedItems",
    ],
    "additionalProperties": False,
}


@dataclass(frozen=True)
class ExtractionOutcome:
    data: ExtractedOrderData
    attempts: int
    fallback: bool = False
    audit_reason: Optional[str] = None


def fallback_extraction() -> ExtractedOrderData:
    return ExtractedOrderData(
        items=[],
        missing_fields=[UNRESOLVED_FIELD],
        clarification_question=FALLBACK_QUESTION,
        confidence=0.0,
    )


def _format_price(value: float) -> str:
    return f"{value:g}"


def build_candidates_prompt(
    candidates: Sequence[MenuCandidate],
    index: Optional[MenuIndex] = None,
    option_hints: Sequence[OptionCandidate] = (),
) -> str:
    if not candidates:
        return "\nMENÜ ADAYLARI: Menüde eşleşen ürün bulunamadı."

    lines = ["", "MENÜ ADAYLARI:"]
    for candidate in candidates:
        line = f"[{candidate.menu_item_id}] {candidate.name} ({candidate.category}) - {_format_price(candidate.base_price)} TL"
        if candidate.synonyms_matched:
            line += f" (ayrıca: {', '.join(candidate.synonyms_matched)})"
        lines.append(line)
        if index is None:
            continue
        for group in index.groups_for_item(candidate.menu_item_id):
            req_label = " (zorunlu)" if group.effective_min > 0 else ""
            type_label = "tek seç" if group.type == "SINGLE" else "çoklu seç"
            opts = []
            for opt in group.options:
                delta = f" +{_format_price(opt.price_delta)}TL" if opt.price_delta > 0 else ""
                default = " (varsayılan)" if opt.is_default else ""
                opts.append(f"{opt.name}{delta}{default}")
            lines.append(f"  - {group.name}{req_label} [{type_label}]: {', '.join(opts)}")

    if option_hints:
        hints = ", ".join(f"{hint.name} ({hint.group_name})" for hint in option_hints)
        lines.append(f"\nMESAJDA GEÇEN SEÇENEKLER: {hints}")
    return "\n".join(lines)


def serialize_draft(draft_order: Sequence[DraftOrderItem], index: Optional[MenuIndex] = None) -> str:
    """Compact one-line-per-item rendering of the draft order for the prompt."""
    if not draft_order:
        return "MEVCUT TASLAK: boş"
    lines = ["MEVCUT TASLAK:"]
    for item in draft_order:
        entry = index.item(item.menu_item_id) if index is not None else None
        name = entry.name if entry is not None else item.menu_item_id
        line = f"[{item.menu_item_id}] {name} x{item.qty}"
        if item.option_selections:
            line += " (" + ", ".join(f"{sel.group_name}: {sel.option_name}" for sel in item.option_selections) + ")"
        if item.extras:
            line += " +" + ", ".join(f"{extra.name} x{extra.qty}" for extra in item.extras)
        if item.notes:
            line += f" not: {item.notes}"
        lines.append(line)
    return "\n".join(lines)


def build_messages(
    turns: Sequence[ChatTurn],
    draft_order: Sequence[DraftOrderItem],
    candidates: Sequence[MenuCandidate],
    index: Optional[MenuIndex] = None,
    option_hints: Sequence[OptionCandidate] = (),
    history_turns: int = DEFAULT_HISTORY_TURNS,
) -> List[Dict[str, str]]:
    system_prompt = "\n".join(
        [
            SYSTEM_PROMPT_PREFIX,
            serialize_draft(draft_order, index),
            build_candidates_prompt(candidates, index, option_hints),
            "",
            "ÇIKTI ŞEMASI:",
            json.dumps(LLM_EXTRACTION_SCHEMA, ensure_ascii=False, separators=(",", ":")),
        ]
    )
    messages = [{"role": "system", "content": system_prompt}]
    recent = list(turns)[-history_turns:] if history_turns > 0 else []
    for turn in recent:
        messages.append({"role": turn.role, "content": turn.text})
    return messages


def parse_extraction(raw: str, allowed_ids: Iterable[str]) -> ExtractedOrderData:
    """Parse and validate a model answer; raise SchemaValidationError on any violation."""
    if not raw or not raw.strip():
        raise SchemaValidationError("empty response", raw=raw)
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as e:
        raise SchemaValidationError(f"invalid JSON: {e.msg}", raw=raw) from e
    if not isinstance(payload, dict):
        raise SchemaValidationError("top-level value is not an object", raw=raw)

    try:
        data = ExtractedOrderData.model_validate(payload)
    except ValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise SchemaValidationError(f"schema violation at '{location}': {first.get('msg', 'invalid')}", raw=raw) from e

    allowed: Set[str] = set(allowed_ids)
    unknown = sorted({item.menu_item_id for item in data.items if item.menu_item_id not in allowed})
    if unknown:
        raise SchemaValidationError(f"ungrounded menuItemId: {', '.join(unknown)}", raw=raw)

    if data.unresolved_items:
        missing = list(data.missing_fields)
        for phrase in data.unresolved_items:
            marker = f"{UNRESOLVED_FIELD}:{phrase}"
            if marker not in missing:
                missing.append(marker)
        data = data.model_copy(update={"missing_fields": missing})
    return data


class ExtractionInvoker:
    def __init__(
        self,
        provider: LLMProvider,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = 1,
        history_turns: int = DEFAULT_HISTORY_TURNS,
    ) -> None:
        self.provider = provider
        self.timeout_seconds = timeout_seconds
        self.max_retries = max(0, min(max_retries, 1))
        self.history_turns = history_turns

    async def extract(
        self,
        turns: Sequence[ChatTurn],
        draft_order: Sequence[DraftOrderItem],
        candidates: Sequence[MenuCandidate],
        index: Optional[MenuIndex] = None,
        option_hints: Sequence[OptionCandidate] = (),
    ) -> ExtractedOrderData:
        outcome = await self.run(turns, draft_order, candidates, index=index, option_hints=option_hints)
        return outcome.data

    async def run(
        self,
        turns: Sequence[ChatTurn],
        draft_order: Sequence[DraftOrderItem],
        candidates: Sequence[MenuCandidate],
        index: Optional[MenuIndex] = None,
        option_hints: Sequence[OptionCandidate] = (),
    ) -> ExtractionOutcome:
        messages = build_messages(
            turns,
            draft_order,
            candidates,
            index=index,
            option_hints=option_hints,
            history_turns=self.history_turns,
        )
        allowed_ids = {c.menu_item_id for c in candidates} | {item.menu_item_id for item in draft_order}

        last_reason = "unknown"
        attempts = 0
        for attempt in range(1 + self.max_retries):
            attempts = attempt + 1
            raw: Optional[str] = None
            try:
                raw = await self._call(messages, attempt=attempts)
                data = parse_extraction(raw, allowed_ids)
                return ExtractionOutcome(data=data, attempts=attempts)
            except SchemaValidationError as e:
                last_reason = f"schema_validation: {e}"
                logger.warning("extraction_schema_violation", attempt=attempts, error=str(e))
                messages = messages + self._corrective_messages(raw, last_reason)
            except UpstreamTimeout as e:
                last_reason = f"upstream_timeout: {e}"
                logger.warning("extraction_timeout", attempt=attempts, timeout_seconds=self.timeout_seconds)
            except httpx.HTTPError as e:
                last_reason = f"upstream_error: {type(e).__name__}"
                logger.warning("extraction_upstream_error", attempt=attempts, error=str(e))
            except Exception as e:
                last_reason = f"provider_error: {type(e).__name__}"
                logger.exception("extraction_provider_failed", attempt=attempts)

        logger.warning("extraction_fallback", attempts=attempts, audit_reason=last_reason)
        return ExtractionOutcome(
            data=fallback_extraction(),
            attempts=attempts,
            fallback=True,
            audit_reason=last_reason[:500],
        )

    async def _call(self, messages: List[Dict[str, str]], attempt: int) -> str:
        with LogPerformance(logger, "llm_extraction", provider=self.provider.name, attempt=attempt):
            try:
                return await asyncio.wait_for(
                    self.provider.complete_json(messages, LLM_EXTRACTION_SCHEMA),
                    timeout=self.timeout_seconds,
                )
            except asyncio.TimeoutError as e:
                raise UpstreamTimeout(f"no answer within {self.timeout_seconds}s") from e

    @staticmethod
    def _corrective_messages(raw: Optional[str], reason: str) -> List[Dict[str, str]]:
        follow_up: List[Dict[str, str]] = []
        if raw:
            follow_up.append({"role": "assistant", "content": raw[:2000]})
        follow_up.append({"role": "user", "content": CORRECTIVE_INSTRUCTION.format(error=reason[:300])})
        return follow_up
