import asyncio
import json
from typing import Any, Dict, List, Optional, Sequence

import pytest

from siparis_nlu.core.config import Settings
from siparis_nlu.db.intent_repository import InMemoryIntentRepository
from siparis_nlu.llm.providers import LLMProvider
from siparis_nlu.schemas.menu import CanonicalMenuExport
from siparis_nlu.schemas.order import DraftOrderItem
from siparis_nlu.services.container import build_container
from siparis_nlu.services.gateways import MessagingGateway, OrderManagementGateway
from siparis_nlu.services.nlu.menu_index import build_menu_index

TENANT = "kebapci-ali"


def menu_export_payload(version: int = 1, tenant_id: str = TENANT) -> Dict[str, Any]:
    return {
        "version": version,
        "exportedAt": "2026-10-01T09:00:00Z",
        "tenant": {"id": tenant_id, "name": "Kebapçı Ali", "slug": "kebapci-ali"},
        "categories": [
            {
                "name": "Kebaplar",
                "items": [
                    {"id": "adana", "name": "Adana Kebap", "basePrice": 220, "optionGroupIds": ["aci"]},
                    {"id": "urfa", "name": "Urfa Kebap", "basePrice": 220, "optionGroupIds": ["aci"]},
                    {"id": "tavuk-doner", "name": "Tavuk Döner", "basePrice": 150, "optionGroupIds": ["sos"]},
                    {"id": "tavuk-sis", "name": "Tavuk Şiş", "basePrice": 180},
                    {"id": "lahmacun", "name": "Lahmacun", "basePrice": 60},
                    {"id": "beyti", "name": "Beyti", "basePrice": 260, "isActive": False},
                ],
            },
            {
                "name": "İçecekler",
                "items": [
                    {"id": "ayran", "name": "Ayran", "basePrice": 25},
                    {"id": "kola", "name": "Kola", "basePrice": 40, "optionGroupIds": ["boy"]},
                ],
            },
        ],
        "optionGroups": [
            {
                "id": "aci",
                "name": "Acı",
                "type": "SINGLE",
                "required": False,
                "options": [
                    {"id": "acili", "name": "Acılı"},
                    {"id": "acisiz", "name": "Acısız", "isDefault": True},
                ],
            },
            {
                "id": "boy",
                "name": "Boy",
                "type": "SINGLE",
                "required": True,
                "minSelect": 1,
                "maxSelect": 1,
                "options": [
                    {"id": "kucuk", "name": "Küçük"},
                    {"id": "buyuk", "name": "Büyük", "priceDelta": 10},
                ],
            },
            {
                "id": "sos",
                "name": "Sos",
                "type": "MULTI",
                "maxSelect": 2,
                "options": [
                    {"id": "ketcap", "name": "Ketçap"},
                    {"id": "mayonez", "name": "Mayonez"},
                    {"id": "hardal", "name": "Hardal", "priceDelta": 2.5},
                ],
            },
        ],
        "synonyms": [
            {"phrase": "adana", "mapsTo": {"type": "item", "id": "adana"}, "weight": 0.9},
            {"phrase": "tavuk", "mapsTo": {"type": "item", "id": "tavuk-doner"}, "weight": 0.9},
            {"phrase": "tavuk şiş", "mapsTo": {"type": "item", "id": "tavuk-sis"}, "weight": 0.95},
            {"phrase": "şiş", "mapsTo": {"type": "item", "id": "tavuk-sis"}, "weight": 0.6},
            {"phrase": "acılı", "mapsTo": {"type": "option", "id": "acili"}, "weight": 0.9},
            {"phrase": "coca cola", "mapsTo": {"type": "item", "id": "kola"}, "weight": 0.8},
        ],
    }


def extraction_json(items: Sequence[Dict[str, Any]] = (), **overrides: Any) -> str:
    """A model answer in the wire format; item fields get sensible defaults."""
    full_items = []
    for item in items:
        full = {
            "menuItemId": item["menuItemId"],
            "qty": 1,
            "optionSelections": [],
            "extras": [],
            "notes": None,
            "action": "add",
            "itemConfidence": 0.95,
        }
        full.update(item)
        full_items.append(full)
    payload = {
        "items": full_items,
        "missingFields": [],
        "clarificationQuestion": None,
        "confidence": 0.95,
        "orderNotes": None,
        "unresolvedItems": [],
    }
    payload.update(overrides)
    return json.dumps(payload, ensure_ascii=False)


class ScriptedProvider(LLMProvider):
    """Answers from a script; an Exception entry is raised, a coroutine function is awaited."""

    name = "scripted"

    def __init__(self, *responses: Any) -> None:
        self.responses: List[Any] = list(responses)
        self.calls: List[List[Dict[str, str]]] = []

    async def complete_json(self, messages, schema, schema_name="order_extraction") -> str:
        self.calls.append(list(messages))
        if not self.responses:
            raise AssertionError("ScriptedProvider ran out of responses")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return await response()
        return response


class RecordingOrderGateway(OrderManagementGateway):
    def __init__(self, drafts: Optional[Dict[str, List[DraftOrderItem]]] = None) -> None:
        self.drafts = drafts or {}
        self.applied: List[Dict[str, Any]] = []
        self.fetched: List[str] = []

    async def get_draft(self, tenant_id, conversation_id):
        self.fetched.append(conversation_id)
        return list(self.drafts.get(conversation_id, []))

    async def apply_draft(self, tenant_id, conversation_id, items, total_price):
        self.applied.append(
            {"conversation_id": conversation_id, "items": list(items), "total_price": total_price}
        )
        return True


class RecordingMessagingGateway(MessagingGateway):
    def __init__(self) -> None:
        self.sent: List[Dict[str, str]] = []

    async def send_text(self, tenant_id, conversation_id, text):
        self.sent.append({"conversation_id": conversation_id, "text": text})
        return True


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def menu_export() -> CanonicalMenuExport:
    return CanonicalMenuExport.model_validate(menu_export_payload())


@pytest.fixture
def menu_index(menu_export):
    return build_menu_index(menu_export)


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        INTENT_STORE="memory",
        ASSISTANT_ENABLE_LLM=False,
        NLU_LLM_TIMEOUT_SECONDS=2.0,
    )


@pytest.fixture
def order_gateway() -> RecordingOrderGateway:
    return RecordingOrderGateway()


@pytest.fixture
def messaging_gateway() -> RecordingMessagingGateway:
    return RecordingMessagingGateway()


@pytest.fixture
def make_container(test_settings, order_gateway, messaging_gateway, menu_export):
    """Container with a scripted model and the sample menu already published."""

    def _make(*responses: Any, publish: bool = True):
        container = build_container(
            test_settings,
            provider=ScriptedProvider(*responses),
            repository=InMemoryIntentRepository(),
            order_gateway=order_gateway,
            messaging_gateway=messaging_gateway,
        )
        if publish:
            container.registry.publish(menu_export)
        return container

    return _make
