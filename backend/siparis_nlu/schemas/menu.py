"""Yayınlanmış menü dışa aktarımı (CanonicalMenuExport) modelleri."""
from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """JSON tarafında camelCase, Python tarafında snake_case."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CanonicalOption(CamelModel):
    id: str
    name: str
    price_delta: float = 0.0
    is_default: bool = False
    is_active: bool = True


class CanonicalOptionGroup(CamelModel):
    id: str
    name: str
    type: Literal["SINGLE", "MULTI"] = "SINGLE"
    required: bool = False
    min_select: int = Field(default=0, ge=0)
    max_select: Optional[int] = Field(default=None, ge=1)
    options: List[CanonicalOption] = Field(default_factory=list)


class CanonicalMenuItem(CamelModel):
    id: str
    name: str
    description: Optional[str] = None
    base_price: float = Field(ge=0)
    is_active: bool = True
    option_group_ids: List[str] = Field(default_factory=list)


class CanonicalCategory(CamelModel):
    name: str
    items: List[CanonicalMenuItem] = Field(default_factory=list)


class SynonymTarget(CamelModel):
    type: Literal["item", "option"]
    id: str
    name: Optional[str] = None


class CanonicalSynonym(CamelModel):
    phrase: str = Field(min_length=1)
    maps_to: SynonymTarget
    weight: float = Field(default=1.0, gt=0.0, le=1.0)


class CanonicalTenant(CamelModel):
    id: str
    name: Optional[str] = None
    slug: Optional[str] = None


class CanonicalMenuExport(CamelModel):
    """Menü yayınlama servisinin her yeni versiyonda gönderdiği düz menü."""

    version: int
    exported_at: Optional[datetime] = None
    tenant: CanonicalTenant
    categories: List[CanonicalCategory] = Field(default_factory=list)
    option_groups: List[CanonicalOptionGroup] = Field(default_factory=list)
    synonyms: List[CanonicalSynonym] = Field(default_factory=list)


class MenuIndexSummary(CamelModel):
    tenant_id: str
    version: int
    built_at: datetime
    item_count: int
    option_group_count: int
    synonym_count: int
