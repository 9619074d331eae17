# backend/siparis_nlu/services/container.py
"""
Servis kabı
Uygulama ömrü boyunca tek örnek olan servisleri bir arada tutar (app.state.container)
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from databases import Database

from ..core.config import Settings, settings as default_settings
from ..db.database import create_database
from ..db.intent_repository import DatabaseIntentRepository, InMemoryIntentRepository, OrderIntentRepository
from ..llm.providers import LLMProvider, get_llm_provider
from .gateways import MessagingGateway, OrderManagementGateway, get_messaging_gateway, get_order_gateway
from .nlu.conversation_store import ConversationStore
from .nlu.extraction import ExtractionInvoker
from .nlu.feedback import FeedbackRecorder
from .nlu.menu_index import MenuIndexRegistry
from .nlu.orchestrator import NluOrchestrator

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    registry: MenuIndexRegistry
    invoker: ExtractionInvoker
    repository: OrderIntentRepository
    orchestrator: NluOrchestrator
    feedback: FeedbackRecorder
    config: Settings
    # None: kayıtlar bellekte tutuluyor, bağlanacak DB yok
    database: Optional[Database] = None


def build_container(
    config: Optional[Settings] = None,
    provider: Optional[LLMProvider] = None,
    repository: Optional[OrderIntentRepository] = None,
    order_gateway: Optional[OrderManagementGateway] = None,
    messaging_gateway: Optional[MessagingGateway] = None,
) -> ServiceContainer:
    """Ayarlardan servisleri kurar; testler herhangi bir parçayı dışarıdan verebilir."""
    config = config or default_settings

    database = None
    if repository is None:
        if config.INTENT_STORE == "memory":
            logger.warning("[CONTAINER] INTENT_STORE=memory, order intents will not survive a restart")
            repository = InMemoryIntentRepository()
        else:
            database = create_database(config)
            repository = DatabaseIntentRepository(database)

    registry = MenuIndexRegistry()
    invoker = ExtractionInvoker(
        provider or get_llm_provider(config),
        timeout_seconds=config.NLU_LLM_TIMEOUT_SECONDS,
        max_retries=config.NLU_LLM_MAX_RETRIES,
        history_turns=config.NLU_HISTORY_TURNS,
    )
    orchestrator = NluOrchestrator(
        registry=registry,
        invoker=invoker,
        repository=repository,
        order_gateway=order_gateway or get_order_gateway(config),
        messaging_gateway=messaging_gateway or get_messaging_gateway(config),
        store=ConversationStore(),
        threshold=config.NLU_CONFIDENCE_THRESHOLD,
        top_k=config.NLU_CANDIDATE_TOP_K,
    )
    return ServiceContainer(
        registry=registry,
        invoker=invoker,
        repository=repository,
        orchestrator=orchestrator,
        feedback=FeedbackRecorder(repository),
        config=config,
        database=database,
    )
