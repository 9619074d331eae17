import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from databases import Database

from siparis_nlu.core.errors import AlreadyRecorded, NotFound
from siparis_nlu.db.intent_repository import DatabaseIntentRepository, InMemoryIntentRepository
from siparis_nlu.db.schema import create_tables
from siparis_nlu.schemas.order import ExtractedOrderData, ExtractedOrderItem, OrderIntentDto
from siparis_nlu.services.nlu.feedback import FeedbackRecorder

from conftest import TENANT, run

BASE_TIME = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


def _intent(intent_id: str, conversation_id: str = "conv-1", minutes: int = 0) -> OrderIntentDto:
    extracted = ExtractedOrderData(
        items=[ExtractedOrderItem(menu_item_id="adana", qty=2)],
        confidence=0.92,
        order_notes="zile basmayın",
    )
    return OrderIntentDto(
        id=intent_id,
        tenant_id=TENANT,
        conversation_id=conversation_id,
        last_user_message_id=f"msg-{intent_id}",
        extracted_json=extracted,
        confidence=extracted.confidence,
        needs_clarification=False,
        created_at=BASE_TIME + timedelta(minutes=minutes),
    )


class TestFeedbackRecorder:
    """Geri bildirim yalnızca bir kez yazılabilir"""

    def test_feedback_single_write(self):
        async def scenario():
            repository = InMemoryIntentRepository()
            await repository.insert(_intent("i-1"))
            recorder = FeedbackRecorder(repository)

            updated = await recorder.record_feedback("i-1", "correct")
            with pytest.raises(AlreadyRecorded):
                await recorder.record_feedback("i-1", "incorrect")
            return updated, await repository.get("i-1")

        updated, stored = run(scenario())
        assert updated.agent_feedback == "correct"
        assert stored.agent_feedback == "correct"
        # nothing but the label changed
        assert stored.model_dump(exclude={"agent_feedback"}) == _intent("i-1").model_dump(exclude={"agent_feedback"})

    def test_unknown_intent_not_found(self):
        recorder = FeedbackRecorder(InMemoryIntentRepository())
        with pytest.raises(NotFound):
            run(recorder.record_feedback("missing", "correct"))

    def test_other_tenant_cannot_label(self):
        async def scenario():
            repository = InMemoryIntentRepository()
            await repository.insert(_intent("i-1"))
            await FeedbackRecorder(repository).record_feedback("i-1", "correct", tenant_id="baska-tenant")

        with pytest.raises(NotFound):
            run(scenario())

    def test_invalid_label_rejected(self):
        with pytest.raises(ValueError):
            run(FeedbackRecorder(InMemoryIntentRepository()).record_feedback("i-1", "maybe"))

    def test_concurrent_feedback_only_one_wins(self):
        async def scenario():
            repository = InMemoryIntentRepository()
            await repository.insert(_intent("i-1"))
            recorder = FeedbackRecorder(repository)
            return await asyncio.gather(
                recorder.record_feedback("i-1", "correct"),
                recorder.record_feedback("i-1", "incorrect"),
                return_exceptions=True,
            )

        results = run(scenario())
        assert sum(1 for r in results if isinstance(r, OrderIntentDto)) == 1
        assert sum(1 for r in results if isinstance(r, AlreadyRecorded)) == 1


def test_in_memory_listing_is_ordered_and_scoped():
    async def scenario():
        repository = InMemoryIntentRepository()
        await repository.insert(_intent("b", minutes=5))
        await repository.insert(_intent("a", minutes=1))
        await repository.insert(_intent("x", conversation_id="conv-2"))
        return (
            await repository.list_for_conversation(TENANT, "conv-1"),
            await repository.list_for_conversation(TENANT, "conv-1", limit=1),
        )

    all_rows, latest = run(scenario())
    assert [row.id for row in all_rows] == ["a", "b"]
    assert [row.id for row in latest] == ["b"]


def test_database_repository_round_trip(tmp_path):
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'intents.db'}")

    async def scenario():
        await database.connect()
        try:
            await create_tables(database)
            # idempotent DDL
            await create_tables(database)
            repository = DatabaseIntentRepository(database)
            await repository.insert(_intent("i-2", minutes=2))
            await repository.insert(_intent("i-1", minutes=1))

            recorder = FeedbackRecorder(repository)
            labelled = await recorder.record_feedback("i-1", "incorrect")
            with pytest.raises(AlreadyRecorded):
                await recorder.record_feedback("i-1", "correct")
            with pytest.raises(NotFound):
                await recorder.record_feedback("nope", "correct")

            rows = await repository.list_for_conversation(TENANT, "conv-1")
            return labelled, rows
        finally:
            await database.disconnect()

    labelled, rows = run(scenario())
    assert labelled.agent_feedback == "incorrect"
    assert [row.id for row in rows] == ["i-1", "i-2"]
    assert rows[0].agent_feedback == "incorrect"
    assert rows[1].agent_feedback is None
    assert rows[0].extracted_json.items[0].menu_item_id == "adana"
    assert rows[0].extracted_json.order_notes == "zile basmayın"
    assert rows[0].needs_clarification is False
