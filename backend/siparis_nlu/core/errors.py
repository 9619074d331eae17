"""Sipariş anlama katmanına özel hatalar."""
from __future__ import annotations

from typing import Optional


class NluError(RuntimeError):
    """Sipariş anlama sürecinde meydana gelen genel hata."""


class SchemaValidationError(NluError):
    """Model çıktısı beklenen JSON sözleşmesine uymadığında fırlatılır."""

    def __init__(self, message: str, raw: Optional[str] = None) -> None:
        super().__init__(message)
        self.raw = raw


class UpstreamTimeout(NluError):
    """Dil modeli servisi zaman aşımına uğradığında fırlatılır."""


class MenuIndexStale(NluError):
    """Tenant için yayınlanmış bir menü yokken çıkarım istendiğinde fırlatılır."""

    def __init__(self, tenant_id: str) -> None:
        super().__init__(f"No published menu for tenant '{tenant_id}'")
        self.tenant_id = tenant_id


class AlreadyRecorded(NluError):
    """Intent kaydına daha önce geri bildirim girilmişse fırlatılır."""

    def __init__(self, intent_id: str) -> None:
        super().__init__(f"Feedback already recorded for intent '{intent_id}'")
        self.intent_id = intent_id


class NotFound(NluError):
    """Beklenen intent kaydı bulunamadığında fırlatılır."""

    def __init__(self, intent_id: str) -> None:
        super().__init__(f"Order intent '{intent_id}' not found")
        self.intent_id = intent_id


class ReconciliationConflict(NluError):
    """Taslak sipariş, çıkarımın baz aldığı halden farklılaşmışsa fırlatılır."""


class MenuExportError(NluError):
    """Yayınlanan menü dışa aktarımı tutarsız olduğunda fırlatılır."""
