"""Menu Index: immutable lookup structure built from a published menu export.

An index is built once per published menu version and never mutated. When a
tenant republishes, `MenuIndexRegistry.publish` builds a brand new index and
swaps the reference, so readers holding the previous index keep a consistent
view until they are done with it.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple

from ...core.errors import MenuExportError, MenuIndexStale
from ...core.logging_config import get_logger
from ...schemas.menu import CanonicalMenuExport, MenuIndexSummary
from ...utils.text_matching import normalize, tokenize

logger = get_logger(__name__)

# Item names are indexed as implicit synonyms with this weight
ITEM_NAME_WEIGHT = 1.0


@dataclass(frozen=True)
class MenuIndexEntry:
    menu_item_id: str
    name: str
    category: str
    base_price: float
    option_group_ids: Tuple[str, ...] = ()
    description: Optional[str] = None


@dataclass(frozen=True)
class OptionEntry:
    id: str
    name: str
    group_id: str
    price_delta: float = 0.0
    is_default: bool = False


@dataclass(frozen=True)
class OptionGroupEntry:
    id: str
    name: str
    type: str = "SINGLE"
    required: bool = False
    min_select: int = 0
    max_select: Optional[int] = None
    options: Tuple[OptionEntry, ...] = ()

    @property
    def effective_min(self) -> int:
        return max(self.min_select, 1 if self.required else 0)

    @property
    def effective_max(self) -> Optional[int]:
        if self.type == "SINGLE":
            return 1 if self.max_select is None else min(self.max_select, 1)
        return self.max_select

    def find_option(self, option_name: str) -> Optional[OptionEntry]:
        wanted = normalize(option_name)
        for option in self.options:
            if normalize(option.name) == wanted:
                return option
        return None


@dataclass(frozen=True)
class SynonymEntry:
    """A normalized phrase pointing at exactly one menu item or option."""

    phrase: str
    weight: float
    maps_to_item_id: Optional[str] = None
    maps_to_option_id: Optional[str] = None
    source_phrase: str = ""
    tokens: Tuple[str, ...] = field(default=(), compare=False)

    def __post_init__(self) -> None:
        if (self.maps_to_item_id is None) == (self.maps_to_option_id is None):
            raise ValueError("synonym must map to exactly one of item or option")
        if not 0.0 < self.weight <= 1.0:
            raise ValueError(f"synonym weight out of range: {self.weight}")
        if not self.tokens:
            # Utterances are tokenized the same way, slang included
            object.__setattr__(self, "tokens", tuple(tokenize(self.phrase, expand_slang=True)))

    @property
    def target(self) -> Tuple[str, str]:
        if self.maps_to_item_id is not None:
            return ("item", self.maps_to_item_id)
        return ("option", self.maps_to_option_id)


@dataclass(frozen=True)
class MenuIndex:
    tenant_id: str
    version: int
    built_at: datetime
    items: Mapping[str, MenuIndexEntry]
    option_groups: Mapping[str, OptionGroupEntry]
    options: Mapping[str, OptionEntry]
    synonyms: Tuple[SynonymEntry, ...]

    def item(self, menu_item_id: str) -> Optional[MenuIndexEntry]:
        return self.items.get(menu_item_id)

    def groups_for_item(self, menu_item_id: str) -> List[OptionGroupEntry]:
        entry = self.items.get(menu_item_id)
        if entry is None:
            return []
        return [self.option_groups[gid] for gid in entry.option_group_ids if gid in self.option_groups]

    def find_group(self, menu_item_id: str, group_name: str) -> Optional[OptionGroupEntry]:
        wanted = normalize(group_name)
        for group in self.groups_for_item(menu_item_id):
            if normalize(group.name) == wanted:
                return group
        return None

    def summary(self) -> MenuIndexSummary:
        return MenuIndexSummary(
            tenant_id=self.tenant_id,
            version=self.version,
            built_at=self.built_at,
            item_count=len(self.items),
            option_group_count=len(self.option_groups),
            synonym_count=len(self.synonyms),
        )


def build_menu_index(export: CanonicalMenuExport, include_item_names: bool = True) -> MenuIndex:
    """Build a fresh immutable index from a canonical menu export."""
    items: Dict[str, MenuIndexEntry] = {}
    groups: Dict[str, OptionGroupEntry] = {}
    options: Dict[str, OptionEntry] = {}

    for group in export.option_groups:
        if group.id in groups:
            raise MenuExportError(f"duplicate option group id '{group.id}'")
        group_options = []
        for opt in group.options:
            if not opt.is_active:
                continue
            entry = OptionEntry(
                id=opt.id,
                name=opt.name,
                group_id=group.id,
                price_delta=float(opt.price_delta),
                is_default=opt.is_default,
            )
            options[opt.id] = entry
            group_options.append(entry)
        groups[group.id] = OptionGroupEntry(
            id=group.id,
            name=group.name,
            type=group.type,
            required=group.required,
            min_select=group.min_select,
            max_select=group.max_select,
            options=tuple(group_options),
        )

    for category in export.categories:
        for item in category.items:
            if not item.is_active:
                continue
            if item.id in items:
                raise MenuExportError(f"duplicate menu item id '{item.id}'")
            items[item.id] = MenuIndexEntry(
                menu_item_id=item.id,
                name=item.name,
                category=category.name,
                base_price=float(item.base_price),
                option_group_ids=tuple(gid for gid in item.option_group_ids if gid in groups),
                description=item.description,
            )

    synonyms: List[SynonymEntry] = []
    seen = set()
    for syn in export.synonyms:
        phrase = normalize(syn.phrase)
        if not phrase:
            logger.warning("menu_synonym_skipped", reason="empty_phrase", phrase=syn.phrase)
            continue
        target_id = syn.maps_to.id
        if syn.maps_to.type == "item" and target_id not in items:
            logger.warning("menu_synonym_skipped", reason="unknown_item", phrase=syn.phrase, target=target_id)
            continue
        if syn.maps_to.type == "option" and target_id not in options:
            logger.warning("menu_synonym_skipped", reason="unknown_option", phrase=syn.phrase, target=target_id)
            continue
        entry = SynonymEntry(
            phrase=phrase,
            weight=float(syn.weight),
            maps_to_item_id=target_id if syn.maps_to.type == "item" else None,
            maps_to_option_id=target_id if syn.maps_to.type == "option" else None,
            source_phrase=syn.phrase,
        )
        seen.add((phrase, entry.target))
        synonyms.append(entry)

    if include_item_names:
        for entry in items.values():
            phrase = normalize(entry.name)
            if phrase and (phrase, ("item", entry.menu_item_id)) not in seen:
                synonyms.append(
                    SynonymEntry(
                        phrase=phrase,
                        weight=ITEM_NAME_WEIGHT,
                        maps_to_item_id=entry.menu_item_id,
                        source_phrase=entry.name,
                    )
                )

    return MenuIndex(
        tenant_id=export.tenant.id,
        version=export.version,
        built_at=datetime.now(timezone.utc),
        items=MappingProxyType(items),
        option_groups=MappingProxyType(groups),
        options=MappingProxyType(options),
        synonyms=tuple(synonyms),
    )


class MenuIndexRegistry:
    """Tenant -> current MenuIndex, replaced wholesale on every publish."""

    def __init__(self) -> None:
        self._indexes: Mapping[str, MenuIndex] = MappingProxyType({})
        self._write_lock = threading.Lock()

    def publish(self, export: CanonicalMenuExport) -> MenuIndex:
        index = build_menu_index(export)
        with self._write_lock:
            current = self._indexes.get(index.tenant_id)
            if current is not None and index.version <= current.version:
                logger.warning(
                    "menu_publish_ignored",
                    tenant_id=index.tenant_id,
                    version=index.version,
                    current_version=current.version,
                )
                return current
            updated = dict(self._indexes)
            updated[index.tenant_id] = index
            self._indexes = MappingProxyType(updated)
        logger.info(
            "menu_index_published",
            tenant_id=index.tenant_id,
            version=index.version,
            items=len(index.items),
            synonyms=len(index.synonyms),
        )
        return index

    def get(self, tenant_id: str) -> MenuIndex:
        index = self._indexes.get(tenant_id)
        if index is None:
            raise MenuIndexStale(tenant_id)
        return index

    def peek(self, tenant_id: str) -> Optional[MenuIndex]:
        return self._indexes.get(tenant_id)

    def tenant_count(self) -> int:
        return len(self._indexes)
