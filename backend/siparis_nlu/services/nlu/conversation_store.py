"""Per-conversation draft order storage for the order assistant.

Each conversation owns one slot: its draft order, state-machine state and the
lock that serializes message processing. Slots for different conversations
are independent, so they proceed concurrently.

Idle slots are swept after the TTL. A swept slot that was closed, reassigned
or frozen leaves a small tombstone behind, so the conversation does not come
back to life when a late message arrives.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Tuple

from ...schemas.order import DraftOrderItem

_SLOT_TTL = timedelta(hours=2)
_TOMBSTONE_TTL = timedelta(days=7)

IDLE = "IDLE"
EXTRACTING = "EXTRACTING"
ACCEPTED = "ACCEPTED"
CLARIFYING = "CLARIFYING"
CLOSED = "CLOSED"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ConversationSlot:
    tenant_id: str
    conversation_id: str
    draft_order: List[DraftOrderItem] = field(default_factory=list)
    state: str = IDLE
    closed: bool = False
    reassigned: bool = False
    frozen: bool = False
    hydrated: bool = False
    # Taslak her değiştiğinde artar; çıkarım sırasında değişmişse sonuç atılır
    generation: int = 0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    last_updated: datetime = field(default_factory=_utcnow)

    def touch(self) -> None:
        self.last_updated = _utcnow()

    @property
    def accepting_messages(self) -> bool:
        return not (self.closed or self.reassigned)

    @property
    def finished(self) -> bool:
        return self.closed or self.reassigned or self.frozen

    def snapshot(self) -> Tuple[int, List[DraftOrderItem]]:
        return self.generation, list(self.draft_order)

    def commit(self, draft_order: List[DraftOrderItem]) -> None:
        self.draft_order = list(draft_order)
        self.generation += 1
        self.touch()


@dataclass(frozen=True)
class _Tombstone:
    closed: bool
    reassigned: bool
    frozen: bool
    recorded_at: datetime

    def restore(self, slot: ConversationSlot) -> None:
        slot.closed = self.closed
        slot.reassigned = self.reassigned
        slot.frozen = self.frozen
        if not slot.accepting_messages:
            slot.state = CLOSED


class ConversationStore:
    def __init__(self, ttl: timedelta = _SLOT_TTL, tombstone_ttl: timedelta = _TOMBSTONE_TTL) -> None:
        self._store: Dict[Tuple[str, str], ConversationSlot] = {}
        self._tombstones: Dict[Tuple[str, str], _Tombstone] = {}
        self._lock = asyncio.Lock()
        self.ttl = ttl
        self.tombstone_ttl = tombstone_ttl

    async def get(self, tenant_id: str, conversation_id: str) -> ConversationSlot:
        key = (tenant_id, conversation_id)
        async with self._lock:
            self._sweep(_utcnow())
            slot = self._store.get(key)
            if slot is None:
                slot = ConversationSlot(tenant_id=tenant_id, conversation_id=conversation_id)
                tombstone = self._tombstones.pop(key, None)
                if tombstone is not None:
                    tombstone.restore(slot)
                self._store[key] = slot
            slot.touch()
            return slot

    def _expired(self, slot: ConversationSlot, now: datetime) -> bool:
        # Kilit tutulan (işlemde olan) slot asla düşürülmez
        if slot.lock.locked():
            return False
        return now - slot.last_updated > self.ttl

    def _sweep(self, now: datetime) -> None:
        expired = [key for key, slot in self._store.items() if self._expired(slot, now)]
        for key in expired:
            slot = self._store.pop(key)
            if slot.finished:
                self._tombstones[key] = _Tombstone(
                    closed=slot.closed,
                    reassigned=slot.reassigned,
                    frozen=slot.frozen,
                    recorded_at=now,
                )
        stale = [key for key, stone in self._tombstones.items() if now - stone.recorded_at > self.tombstone_ttl]
        for key in stale:
            del self._tombstones[key]

    def __len__(self) -> int:
        return len(self._store)
