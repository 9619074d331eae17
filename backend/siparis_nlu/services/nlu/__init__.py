"""Sipariş anlama (NLU) servis paketi.

Serbest metin müşteri mesajlarını menüye bağlı, fiyatlanmış bir taslak
siparişe çevirir: aday ürün bulma, dil modeliyle yapılandırılmış çıkarım,
güven kapısı + taslakla birleştirme ve çıkarım kayıtlarına geri bildirim.
"""
from .candidate_retriever import OptionCandidate, retrieve, retrieve_options
from .conversation_store import ConversationSlot, ConversationStore
from .extraction import ExtractionInvoker, ExtractionOutcome
from .feedback import FeedbackRecorder
from .menu_index import MenuIndex, MenuIndexRegistry, build_menu_index
from .orchestrator import NluOrchestrator, OrchestrationResult
from .reconciler import ReconcileResult, reconcile

__all__ = [
    "ConversationSlot",
    "ConversationStore",
    "ExtractionInvoker",
    "ExtractionOutcome",
    "FeedbackRecorder",
    "MenuIndex",
    "MenuIndexRegistry",
    "NluOrchestrator",
    "OptionCandidate",
    "OrchestrationResult",
    "ReconcileResult",
    "build_menu_index",
    "reconcile",
    "retrieve",
    "retrieve_options",
]
