# backend/siparis_nlu/services/gateways.py
"""
Dış servis geçitleri
Sipariş yönetimi (taslak sipariş) ve mesajlaşma (müşteriye yanıt) servisleri
"""
from __future__ import annotations

import logging
from typing import List, Optional, Sequence

import httpx

from ..core.config import Settings, settings as default_settings
from ..schemas.order import DraftOrderItem

logger = logging.getLogger(__name__)


class OrderManagementGateway:
    """Taslak siparişin asıl sahibi olan sipariş yönetimi servisi."""

    async def get_draft(self, tenant_id: str, conversation_id: str) -> List[DraftOrderItem]:
        raise NotImplementedError

    async def apply_draft(
        self,
        tenant_id: str,
        conversation_id: str,
        items: Sequence[DraftOrderItem],
        total_price: float,
    ) -> bool:
        raise NotImplementedError


class MessagingGateway:
    """Müşteriye mesaj ileten konuşma kanalı (WhatsApp vb.)."""

    async def send_text(self, tenant_id: str, conversation_id: str, text: str) -> bool:
        raise NotImplementedError


class LoggingOrderGateway(OrderManagementGateway):
    """ORDER_SERVICE_URL tanımlı değilken kullanılır; sadece log'a yazar."""

    async def get_draft(self, tenant_id: str, conversation_id: str) -> List[DraftOrderItem]:
        return []

    async def apply_draft(
        self,
        tenant_id: str,
        conversation_id: str,
        items: Sequence[DraftOrderItem],
        total_price: float,
    ) -> bool:
        logger.info(
            f"[ORDER_GATEWAY] draft tenant={tenant_id} conversation={conversation_id} "
            f"lines={len(items)} total={total_price}"
        )
        return True


class LoggingMessagingGateway(MessagingGateway):
    """MESSAGING_SERVICE_URL tanımlı değilken kullanılır; sadece log'a yazar."""

    async def send_text(self, tenant_id: str, conversation_id: str, text: str) -> bool:
        logger.info(f"[MESSAGING_GATEWAY] tenant={tenant_id} conversation={conversation_id} text={text!r}")
        return True


class HttpOrderGateway(OrderManagementGateway):
    def __init__(self, base_url: str, timeout: float = 5.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _draft_url(self, tenant_id: str, conversation_id: str) -> str:
        return f"{self.base_url}/tenants/{tenant_id}/conversations/{conversation_id}/draft"

    async def get_draft(self, tenant_id: str, conversation_id: str) -> List[DraftOrderItem]:
        """
        Mevcut taslağı getir. 404 = henüz taslak yok.

        Diğer HTTP/bağlantı hataları çağırana fırlatılır.
        """
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.get(self._draft_url(tenant_id, conversation_id))
            if resp.status_code == 404:
                return []
            resp.raise_for_status()
            data = resp.json() or {}
        return [DraftOrderItem.model_validate(item) for item in data.get("items") or []]

    async def apply_draft(
        self,
        tenant_id: str,
        conversation_id: str,
        items: Sequence[DraftOrderItem],
        total_price: float,
    ) -> bool:
        payload = {
            "items": [item.model_dump(by_alias=True) for item in items],
            "totalPrice": total_price,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.put(self._draft_url(tenant_id, conversation_id), json=payload)
                resp.raise_for_status()
            return True
        except httpx.HTTPError as e:
            logger.error(f"[ORDER_GATEWAY] Failed to apply draft for {conversation_id}: {e}", exc_info=True)
            return False


class HttpMessagingGateway(MessagingGateway):
    def __init__(self, base_url: str, timeout: float = 5.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def send_text(self, tenant_id: str, conversation_id: str, text: str) -> bool:
        url = f"{self.base_url}/tenants/{tenant_id}/conversations/{conversation_id}/messages"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(url, json={"text": text})
                resp.raise_for_status()
            return True
        except httpx.HTTPError as e:
            logger.error(f"[MESSAGING_GATEWAY] Failed to send message to {conversation_id}: {e}", exc_info=True)
            return False


def get_order_gateway(config: Optional[Settings] = None) -> OrderManagementGateway:
    config = config or default_settings
    if config.ORDER_SERVICE_URL:
        return HttpOrderGateway(config.ORDER_SERVICE_URL, timeout=config.GATEWAY_TIMEOUT_SECONDS)
    logger.warning("[ORDER_GATEWAY] ORDER_SERVICE_URL not configured, drafts will only be logged")
    return LoggingOrderGateway()


def get_messaging_gateway(config: Optional[Settings] = None) -> MessagingGateway:
    config = config or default_settings
    if config.MESSAGING_SERVICE_URL:
        return HttpMessagingGateway(config.MESSAGING_SERVICE_URL, timeout=config.GATEWAY_TIMEOUT_SECONDS)
    logger.warning("[MESSAGING_GATEWAY] MESSAGING_SERVICE_URL not configured, replies will only be logged")
    return LoggingMessagingGateway()
