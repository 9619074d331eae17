import asyncio
from datetime import timedelta

from siparis_nlu.schemas.order import ChatTurn, DraftOrderItem, OptionSelection
from siparis_nlu.services.nlu.conversation_store import CLOSED, IDLE
from siparis_nlu.services.nlu.orchestrator import MENU_NOT_READY_QUESTION

from conftest import TENANT, extraction_json, run


def _add(menu_item_id, qty=1, **extra):
    return {"menuItemId": menu_item_id, "qty": qty, "action": "add", **extra}


def test_two_items_in_one_message(make_container, order_gateway, messaging_gateway):
    container = make_container(extraction_json([_add("adana"), _add("ayran")]))

    result = run(
        container.orchestrator.process_message(TENANT, "conv-1", "m1", "bir adana kebap bir ayran")
    )

    assert result.status == "accepted"
    assert [(line.menu_item_id, line.qty) for line in result.draft_order] == [("adana", 1), ("ayran", 1)]
    assert result.total_price == 245.0
    assert result.reply_text == (
        "Siparişinizi aldım:\n\n• 1x Adana Kebap\n• 1x Ayran\n\nToplam: 245.00 TL\n\nOnaylıyor musunuz?"
    )
    assert result.intent.needs_clarification is False
    assert result.intent.last_user_message_id == "m1"
    assert order_gateway.applied[-1]["total_price"] == 245.0
    assert messaging_gateway.sent == [{"conversation_id": "conv-1", "text": result.reply_text}]


def test_remove_only_the_named_line(make_container):
    container = make_container(
        extraction_json([_add("adana"), _add("ayran")]),
        extraction_json(
            [
                {"menuItemId": "ayran", "action": "remove"},
                {"menuItemId": "adana", "action": "keep"},
            ]
        ),
    )
    orchestrator = container.orchestrator

    async def scenario():
        await orchestrator.process_message(TENANT, "conv-1", "m1", "bir adana kebap bir ayran")
        return await orchestrator.process_message(
            TENANT,
            "conv-1",
            "m2",
            "ayranı çıkar",
            prior_turns=[ChatTurn(role="user", text="bir adana kebap bir ayran")],
        )

    result = run(scenario())

    assert result.status == "accepted"
    assert [line.menu_item_id for line in result.draft_order] == ["adana"]
    assert result.total_price == 220.0


def test_low_confidence_asks_and_keeps_draft(make_container, messaging_gateway, order_gateway):
    question = "Kaç adet lahmacun istersiniz?"
    container = make_container(
        extraction_json([_add("lahmacun")], confidence=0.4, clarificationQuestion=question)
    )

    result = run(container.orchestrator.process_message(TENANT, "conv-1", "m1", "lahmacun"))

    assert result.status == "clarifying"
    assert result.draft_order == []
    assert result.reply_text == question
    assert result.intent.needs_clarification is True
    assert result.intent.clarification_question == question
    assert messaging_gateway.sent == [{"conversation_id": "conv-1", "text": question}]
    assert order_gateway.applied == []


def test_unresolved_request_is_named_in_question(make_container):
    container = make_container(extraction_json([_add("ayran")], unresolvedItems=["künefe"]))

    result = run(container.orchestrator.process_message(TENANT, "conv-1", "m1", "bir ayran bir künefe"))

    assert result.status == "clarifying"
    assert "künefe" in result.reply_text
    assert result.missing_fields == ["unresolved:künefe"]


def test_required_option_triggers_follow_up(make_container, messaging_gateway):
    container = make_container(extraction_json([_add("kola", qty=2)]))

    result = run(container.orchestrator.process_message(TENANT, "conv-1", "m1", "2 kola"))

    assert result.status == "accepted"
    assert result.missing_fields == ["kola:Boy"]
    assert result.reply_text == "Kola için Boy seçimi yapar mısınız? (Küçük, Büyük)"
    assert result.intent.needs_clarification is True
    assert messaging_gateway.sent[-1]["text"] == result.reply_text


def test_small_talk_is_skipped(make_container):
    container = make_container()

    result = run(container.orchestrator.process_message(TENANT, "conv-1", "m1", "merhaba kolay gelsin"))

    assert result.status == "skipped"
    assert result.intent is None
    assert container.invoker.provider.calls == []
    assert run(container.repository.list_for_conversation(TENANT, "conv-1")) == []


def test_stale_menu_asks_to_wait_without_model_call(make_container, messaging_gateway):
    container = make_container(publish=False)

    result = run(container.orchestrator.process_message(TENANT, "conv-1", "m1", "bir adana"))

    assert result.status == "clarifying"
    assert result.reply_text == MENU_NOT_READY_QUESTION
    assert result.intent.audit_reason == "menu_index_stale"
    assert container.invoker.provider.calls == []
    assert messaging_gateway.sent[-1]["text"] == MENU_NOT_READY_QUESTION


def test_fallback_is_flagged_for_audit(make_container):
    container = make_container("???", "???")

    result = run(container.orchestrator.process_message(TENANT, "conv-1", "m1", "adana"))

    assert result.status == "clarifying"
    assert result.intent.audit_reason.startswith("schema_validation")
    assert result.intent.confidence == 0.0


def test_draft_is_hydrated_from_order_service(make_container, order_gateway):
    order_gateway.drafts["conv-9"] = [
        DraftOrderItem(
            menu_item_id="kola",
            qty=1,
            option_selections=[OptionSelection(group_name="Boy", option_name="Büyük")],
        )
    ]
    container = make_container(extraction_json([_add("ayran")]))

    async def scenario():
        result = await container.orchestrator.process_message(TENANT, "conv-9", "m1", "bir de ayran")
        draft = await container.orchestrator.get_draft(TENANT, "conv-9")
        return result, draft

    result, draft = run(scenario())

    assert [line.menu_item_id for line in result.draft_order] == ["kola", "ayran"]
    assert result.total_price == 75.0
    assert "• 1x Kola (Büyük)" in result.reply_text
    assert "Toplam: 75.00 TL" in result.reply_text
    assert draft.total_price == 75.0
    assert draft.state == IDLE
    assert order_gateway.fetched == ["conv-9"]


def test_messages_of_one_conversation_are_serialized(make_container):
    release = asyncio.Event()

    async def first_answer():
        await release.wait()
        return extraction_json([_add("adana")])

    container = make_container(first_answer, extraction_json([_add("adana")]))
    orchestrator = container.orchestrator

    async def scenario():
        first = asyncio.create_task(orchestrator.process_message(TENANT, "conv-1", "m1", "adana"))
        second = asyncio.create_task(orchestrator.process_message(TENANT, "conv-1", "m2", "bir adana daha"))
        await asyncio.sleep(0.05)
        # the second message waits behind the first one
        assert len(container.invoker.provider.calls) == 1
        release.set()
        return await first, await second

    first, second = run(scenario())

    assert first.draft_order[0].qty == 1
    assert second.draft_order[0].qty == 2
    # the second prompt already saw the first line in the draft
    assert "[adana] Adana Kebap x1" in container.invoker.provider.calls[1][0]["content"]


def test_close_during_extraction_discards_result(make_container, order_gateway):
    release = asyncio.Event()
    started = asyncio.Event()

    async def slow_answer():
        started.set()
        await release.wait()
        return extraction_json([_add("adana")])

    container = make_container(slow_answer)
    orchestrator = container.orchestrator

    async def scenario():
        task = asyncio.create_task(orchestrator.process_message(TENANT, "conv-1", "m1", "adana"))
        await started.wait()
        await orchestrator.close_conversation(TENANT, "conv-1")
        release.set()
        result = await task
        later = await orchestrator.process_message(TENANT, "conv-1", "m2", "bir ayran")
        draft = await orchestrator.get_draft(TENANT, "conv-1")
        intents = await orchestrator.list_intents(TENANT, "conv-1")
        return result, later, draft, intents

    result, later, draft, intents = run(scenario())

    assert result.status == "discarded"
    assert later.status == "discarded"
    assert draft.items == []
    assert draft.state == CLOSED
    assert intents == []
    assert order_gateway.applied == []


def test_freeze_during_extraction_is_a_conflict(make_container):
    release = asyncio.Event()
    started = asyncio.Event()

    async def slow_answer():
        started.set()
        await release.wait()
        return extraction_json([_add("adana")])

    container = make_container(slow_answer)
    orchestrator = container.orchestrator

    async def scenario():
        task = asyncio.create_task(orchestrator.process_message(TENANT, "conv-1", "m1", "adana"))
        await started.wait()
        await orchestrator.freeze_conversation(TENANT, "conv-1")
        release.set()
        result = await task
        after = await orchestrator.process_message(TENANT, "conv-1", "m2", "bir ayran")
        return result, after

    result, after = run(scenario())

    assert result.status == "discarded"
    assert result.intent.audit_reason.startswith("reconciliation_conflict")
    assert result.draft_order == []
    assert after.status == "frozen"


def test_gateway_failure_never_escapes(make_container, order_gateway):
    async def broken(tenant_id, conversation_id):
        raise RuntimeError("order service down")

    order_gateway.get_draft = broken
    container = make_container()

    result = run(container.orchestrator.process_message(TENANT, "conv-1", "m1", "adana"))

    assert result.status == "clarifying"
    assert result.reply_text
    assert result.intent is None


def test_conversations_do_not_share_drafts(make_container):
    container = make_container(extraction_json([_add("adana")]), extraction_json([_add("ayran")]))
    orchestrator = container.orchestrator

    async def scenario():
        await orchestrator.process_message(TENANT, "conv-a", "m1", "adana")
        await orchestrator.process_message(TENANT, "conv-b", "m1", "ayran")
        return await orchestrator.get_draft(TENANT, "conv-a"), await orchestrator.get_draft(TENANT, "conv-b")

    draft_a, draft_b = run(scenario())

    assert [line.menu_item_id for line in draft_a.items] == ["adana"]
    assert [line.menu_item_id for line in draft_b.items] == ["ayran"]


def test_frozen_conversation_stays_frozen_after_idle_expiry(make_container, order_gateway):
    container = make_container(extraction_json([_add("adana")]))
    orchestrator = container.orchestrator

    async def scenario():
        await orchestrator.freeze_conversation(TENANT, "conv-1")
        slot = await orchestrator.store.get(TENANT, "conv-1")
        slot.last_updated -= timedelta(hours=3)
        return await orchestrator.process_message(TENANT, "conv-1", "m1", "bir adana")

    result = run(scenario())

    assert result.status == "frozen"
    assert order_gateway.applied == []
    assert container.invoker.provider.calls == []


def test_closed_conversation_stays_closed_after_idle_expiry(make_container):
    container = make_container(extraction_json([_add("adana")]))
    orchestrator = container.orchestrator

    async def scenario():
        await orchestrator.close_conversation(TENANT, "conv-1")
        slot = await orchestrator.store.get(TENANT, "conv-1")
        slot.last_updated -= timedelta(hours=3)
        result = await orchestrator.process_message(TENANT, "conv-1", "m1", "bir adana")
        return result, await orchestrator.get_draft(TENANT, "conv-1")

    result, draft = run(scenario())

    assert result.status == "discarded"
    assert draft.state == CLOSED
    assert container.invoker.provider.calls == []


def test_close_during_handoff_keeps_closed_state(make_container, order_gateway):
    container = make_container(extraction_json([_add("adana")]))
    orchestrator = container.orchestrator
    record_apply = order_gateway.apply_draft

    async def apply_then_close(tenant_id, conversation_id, items, total_price):
        await orchestrator.close_conversation(tenant_id, conversation_id)
        return await record_apply(tenant_id, conversation_id, items, total_price)

    order_gateway.apply_draft = apply_then_close

    async def scenario():
        result = await orchestrator.process_message(TENANT, "conv-1", "m1", "adana")
        return result, await orchestrator.get_draft(TENANT, "conv-1")

    result, draft = run(scenario())

    assert result.status == "accepted"
    assert draft.state == CLOSED
