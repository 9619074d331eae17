from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, List, Optional

import httpx

from ..core.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


class LLMProvider:
    """Bir prompt + JSON şema alıp JSON metni döndüren dil modeli."""

    name = "base"

    async def complete_json(
        self,
        messages: List[Dict[str, str]],
        schema: Dict[str, Any],
        schema_name: str = "order_extraction",
    ) -> str:
        raise NotImplementedError


class RuleBasedProvider(LLMProvider):
    """LLM kapalıyken kullanılan güvenli yedek: her zaman netleştirme ister."""

    name = "rule_based"

    async def complete_json(
        self,
        messages: List[Dict[str, str]],
        schema: Dict[str, Any],
        schema_name: str = "order_extraction",
    ) -> str:
        return json.dumps(
            {
                "items": [],
                "missingFields": ["llm_unavailable"],
                "clarificationQuestion": (
                    "Siparişinizi şu an otomatik alamıyorum. "
                    "Ne istediğinizi ürün adı ve adetle yazar mısınız?"
                ),
                "confidence": 0.0,
                "orderNotes": None,
                "unresolvedItems": [],
            },
            ensure_ascii=False,
        )


class OpenAIProvider(LLMProvider):
    name = "openai"

    def __init__(
        self,
        api_key: str,
        model: Optional[str],
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 30.0,
    ):
        self.api_key = api_key
        self.model = model or "gpt-4o-mini"
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def complete_json(
        self,
        messages: List[Dict[str, str]],
        schema: Dict[str, Any],
        schema_name: str = "order_extraction",
    ) -> str:
        """
        OpenAI Structured Outputs ile JSON yanıt al.

        HTTP hataları (4xx/5xx) ve bağlantı hataları çağırana fırlatılır;
        tekrar deneme ve yedek cevap kararı çıkarım servisindedir.
        """
        payload = {
            "model": self.model,
            "messages": messages,
            "temperature": 0.3,
            "max_tokens": 1024,
            "response_format": {
                "type": "json_schema",
                "json_schema": {"name": schema_name, "strict": True, "schema": schema},
            },
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        start_time = time.time()
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.post(
                f"{self.base_url}/chat/completions",
                headers=headers,
                content=json.dumps(payload, ensure_ascii=False),
            )
            resp.raise_for_status()
            data = resp.json()

        response_time_ms = int((time.time() - start_time) * 1000)
        usage = data.get("usage") or {}
        logger.info(
            "[LLM_PROVIDER] completion model=%s total_tokens=%s response_time_ms=%s",
            self.model,
            usage.get("total_tokens"),
            response_time_ms,
        )

        try:
            return data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError):
            # Beklenmeyen gövde: şema ihlali olarak ele alınsın diye boş metin
            logger.warning("[LLM_PROVIDER] Unexpected completion body: %s", str(data)[:200])
            return ""


def get_llm_provider(config: Optional[Settings] = None) -> LLMProvider:
    """
    Ayarlara göre LLM provider döndürür.

    Returns:
        LLMProvider: OpenAIProvider veya RuleBasedProvider
    """
    config = config or default_settings
    api_key = (config.OPENAI_API_KEY or "").strip()
    model = config.OPENAI_MODEL or "gpt-4o-mini"

    if config.ASSISTANT_ENABLE_LLM and api_key:
        logger.info(f"[LLM_PROVIDER] Using OpenAI provider with model: {model}")
        return OpenAIProvider(
            api_key,
            model,
            base_url=config.OPENAI_BASE_URL,
            timeout=config.NLU_LLM_TIMEOUT_SECONDS + 5,
        )

    if not config.ASSISTANT_ENABLE_LLM:
        logger.warning("[LLM_PROVIDER] LLM disabled in settings")
    if not api_key:
        logger.warning("[LLM_PROVIDER] OpenAI API key not found")
    logger.warning("[LLM_PROVIDER] Falling back to RuleBasedProvider")
    return RuleBasedProvider()
