import asyncio
from typing import Optional

import pytest

from src.sync.engine import DEFAULT_FAILURE_TEXT, SYSTEM_MESSAGE_ID, ReconciliationEngine
from src.sync.errors import EndpointError, StoreUnavailable
from src.sync.models import ChangeEvent, ChangeRow, SubmitResult, is_temporary_id

CONV = "c-1"


def user_row(message_id: str, content: str, *, conversation_id: str = CONV, annotation=None) -> ChangeRow:
    return ChangeRow(id=message_id, role="user", content=content, conversation_id=conversation_id, annotation=annotation)


def assistant_row(message_id: str, content: str, *, conversation_id: str = CONV) -> ChangeRow:
    return ChangeRow(id=message_id, role="assistant", content=content, conversation_id=conversation_id)


def insert(row: ChangeRow) -> ChangeEvent:
    return ChangeEvent(kind="insert", row=row)


def update(row: ChangeRow) -> ChangeEvent:
    return ChangeEvent(kind="update", row=row)


class FakeStore:
    def __init__(self) -> None:
        self.history: dict[str, list[ChangeRow]] = {}
        self.fail = False
        self.subscriptions: list[str] = []
        self.unsubscribed: list[str] = []
        self.handler = None
        self.load_gates: dict[str, asyncio.Event] = {}

    async def load(self, conversation_id: str):
        gate = self.load_gates.get(conversation_id)
        if gate is not None:
            await gate.wait()
        if self.fail:
            raise StoreUnavailable("store down")
        return list(self.history.get(conversation_id, []))

    async def backfill(self, conversation_id: str, limit: int):
        if self.fail:
            raise StoreUnavailable("store down")
        return list(self.history.get(conversation_id, []))[-limit:]

    def subscribe(self, conversation_id: str, on_event):
        self.subscriptions.append(conversation_id)
        self.handler = on_event

        def unsubscribe() -> None:
            self.unsubscribed.append(conversation_id)

        return unsubscribe


class FakeEndpoint:
    def __init__(self) -> None:
        self.results: list[SubmitResult | Exception] = []
        self.calls: list[tuple[Optional[str], str]] = []
        self.gate: Optional[asyncio.Event] = None

    async def submit(self, conversation_id: Optional[str], content: str) -> SubmitResult:
        self.calls.append((conversation_id, content))
        if self.gate is not None:
            await self.gate.wait()
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def endpoint() -> FakeEndpoint:
    return FakeEndpoint()


@pytest.fixture
def engine(store: FakeStore, endpoint: FakeEndpoint) -> ReconciliationEngine:
    return ReconciliationEngine(store, endpoint)


def snapshot(engine: ReconciliationEngine) -> list[tuple[str, str, str]]:
    return [(m.id, m.role, m.content) for m in engine.visible_messages]


async def start_submit(engine: ReconciliationEngine, endpoint: FakeEndpoint, content: str) -> asyncio.Task:
    """Begin a submit that stays suspended until ``endpoint.gate`` is set."""
    if endpoint.gate is None:
        endpoint.gate = asyncio.Event()
    task = asyncio.create_task(engine.submit(content))
    await asyncio.sleep(0)
    return task


@pytest.mark.asyncio
async def test_initial_state_has_only_system_entry(engine: ReconciliationEngine):
    assert [m.id for m in engine.messages] == [SYSTEM_MESSAGE_ID]
    assert engine.visible_messages == ()
    assert engine.conversation_id is None


@pytest.mark.asyncio
async def test_submit_swaps_temporary_id_and_appends_reply(engine, endpoint, store):
    await engine.load(CONV)
    endpoint.results.append(
        SubmitResult(conversation_id=CONV, user_message_id="u-1", assistant_message_id="a-1", reply_text="hi")
    )

    reply = await engine.submit("hello")

    assert reply is not None and reply.id == "a-1"
    assert snapshot(engine) == [("u-1", "user", "hello"), ("a-1", "assistant", "hi")]
    assert not any(is_temporary_id(m.id) for m in engine.visible_messages)
    assert endpoint.calls == [(CONV, "hello")]


@pytest.mark.asyncio
async def test_optimistic_message_is_visible_before_response(engine, endpoint):
    endpoint.results.append(
        SubmitResult(conversation_id=CONV, user_message_id="u-1", assistant_message_id="a-1", reply_text="hi")
    )
    task = await start_submit(engine, endpoint, "hello")

    [optimistic] = engine.visible_messages
    assert optimistic.role == "user"
    assert optimistic.content == "hello"
    assert is_temporary_id(optimistic.id)

    endpoint.gate.set()
    await task
    assert snapshot(engine)[0] == ("u-1", "user", "hello")


@pytest.mark.asyncio
async def test_blank_submit_is_ignored(engine, endpoint):
    assert await engine.submit("   ") is None
    assert endpoint.calls == []
    assert engine.visible_messages == ()


@pytest.mark.asyncio
async def test_feed_insert_before_response_upgrades_in_place(engine, endpoint, store):
    await engine.load(CONV)
    endpoint.results.append(
        SubmitResult(conversation_id=CONV, user_message_id="u-1", assistant_message_id="a-1", reply_text="hi")
    )
    task = await start_submit(engine, endpoint, "hello")

    store.handler(insert(user_row("u-1", "hello")))
    assert snapshot(engine) == [("u-1", "user", "hello")]

    endpoint.gate.set()
    await task
    assert snapshot(engine) == [("u-1", "user", "hello"), ("a-1", "assistant", "hi")]


@pytest.mark.asyncio
async def test_assistant_from_feed_is_not_duplicated_by_response(engine, endpoint, store):
    await engine.load(CONV)
    endpoint.results.append(
        SubmitResult(conversation_id=CONV, user_message_id="u-1", assistant_message_id="a-1", reply_text="hi")
    )
    task = await start_submit(engine, endpoint, "hello")

    store.handler(insert(user_row("u-1", "hello")))
    store.handler(insert(assistant_row("a-1", "hi")))
    store.handler(insert(assistant_row("a-1", "hi")))

    endpoint.gate.set()
    reply = await task
    assert reply is not None and reply.id == "a-1"
    assert snapshot(engine) == [("u-1", "user", "hello"), ("a-1", "assistant", "hi")]


@pytest.mark.asyncio
async def test_annotation_before_message_is_pending_until_submit_resolves(engine, endpoint, store):
    await engine.load(CONV)
    endpoint.results.append(
        SubmitResult(conversation_id=CONV, user_message_id="u-1", assistant_message_id="a-1", reply_text="hi")
    )
    task = await start_submit(engine, endpoint, "hello")

    # Content differs from the optimistic entry, so only the durable id can match.
    store.handler(update(user_row("u-1", "hello (edited)", annotation={"score": 4})))
    assert dict(engine.pending_annotations) == {"u-1": {"score": 4}}

    endpoint.gate.set()
    await task

    user_message = engine.visible_messages[0]
    assert user_message.id == "u-1"
    assert user_message.annotation == {"score": 4}
    assert dict(engine.pending_annotations) == {}


@pytest.mark.asyncio
async def test_pending_annotation_flushed_by_feed_insert(engine, store):
    await engine.load(CONV)

    store.handler(update(user_row("u-9", "hey", annotation={"anger": 2})))
    assert "u-9" in engine.pending_annotations

    store.handler(insert(user_row("u-9", "hey")))
    [message] = engine.visible_messages
    assert message.annotation == {"anger": 2}
    assert dict(engine.pending_annotations) == {}


@pytest.mark.asyncio
async def test_update_falls_back_to_content_match(engine, endpoint, store):
    await engine.load(CONV)
    endpoint.results.append(
        SubmitResult(conversation_id=CONV, user_message_id="u-1", assistant_message_id="a-1", reply_text="hi")
    )
    task = await start_submit(engine, endpoint, "I am upset")

    store.handler(update(user_row("u-1", "I am upset", annotation={"anger": 4})))
    assert engine.visible_messages[0].annotation == {"anger": 4}
    assert dict(engine.pending_annotations) == {}

    endpoint.gate.set()
    await task
    assert engine.visible_messages[0].id == "u-1"
    assert engine.visible_messages[0].annotation == {"anger": 4}


@pytest.mark.asyncio
async def test_applying_same_update_twice_is_idempotent(engine, store):
    store.history[CONV] = [user_row("u-1", "hello")]
    await engine.load(CONV)

    event = update(user_row("u-1", "hello", annotation={"score": 3}))
    store.handler(event)
    first = engine.visible_messages[0].annotation
    store.handler(event)

    assert engine.visible_messages[0].annotation == first == {"score": 3}


@pytest.mark.asyncio
async def test_update_without_annotation_is_ignored(engine, store):
    store.history[CONV] = [user_row("u-1", "hello", annotation={"score": 2})]
    await engine.load(CONV)

    store.handler(update(user_row("u-1", "hello")))
    store.handler(update(user_row("u-404", "missing")))

    assert engine.visible_messages[0].annotation == {"score": 2}
    assert dict(engine.pending_annotations) == {}


@pytest.mark.asyncio
async def test_duplicate_insert_events_are_discarded(engine, store):
    await engine.load(CONV)

    for _ in range(3):
        store.handler(insert(assistant_row("a-1", "welcome")))

    assert snapshot(engine) == [("a-1", "assistant", "welcome")]


@pytest.mark.asyncio
async def test_events_for_other_conversations_are_discarded(engine, store):
    await engine.load(CONV)

    store.handler(insert(user_row("u-2", "elsewhere", conversation_id="c-2")))
    store.handler(update(user_row("u-2", "elsewhere", conversation_id="c-2", annotation={"score": 5})))
    store.handler(insert(ChangeRow(id="s-1", role="system", content="sys", conversation_id=CONV)))

    assert engine.visible_messages == ()
    assert dict(engine.pending_annotations) == {}


@pytest.mark.asyncio
async def test_identical_content_upgrades_most_recent_optimistic_entry(engine, endpoint, store):
    await engine.load(CONV)
    endpoint.results.extend(
        [
            SubmitResult(conversation_id=CONV, user_message_id="u-1", assistant_message_id="a-1", reply_text="one"),
            SubmitResult(conversation_id=CONV, user_message_id="u-2", assistant_message_id="a-2", reply_text="two"),
        ]
    )
    first = await start_submit(engine, endpoint, "same")
    second = await start_submit(engine, endpoint, "same")
    first_temp, second_temp = [m.id for m in engine.visible_messages]

    store.handler(insert(user_row("u-1", "same")))
    ids = [m.id for m in engine.visible_messages]
    assert ids == [first_temp, "u-1"]

    store.handler(insert(user_row("u-2", "same")))
    assert [m.id for m in engine.visible_messages] == ["u-2", "u-1"]
    assert second_temp not in [m.id for m in engine.visible_messages]

    endpoint.gate.set()
    await asyncio.gather(first, second)

    durable_ids = [m.id for m in engine.visible_messages]
    assert len(durable_ids) == len(set(durable_ids))
    assert sorted(durable_ids) == ["a-1", "a-2", "u-1", "u-2"]


@pytest.mark.asyncio
async def test_upgrade_preserves_position(engine, endpoint, store):
    await engine.load(CONV)
    endpoint.results.append(
        SubmitResult(conversation_id=CONV, user_message_id="u-1", assistant_message_id="a-1", reply_text="hi")
    )
    task = await start_submit(engine, endpoint, "first")
    store.handler(insert(assistant_row("a-0", "interleaved")))
    position = [m.content for m in engine.visible_messages].index("first")

    store.handler(insert(user_row("u-1", "first")))

    assert engine.visible_messages[position].id == "u-1"
    assert [m.content for m in engine.visible_messages][:2] == ["first", "interleaved"]

    endpoint.gate.set()
    await task


@pytest.mark.asyncio
async def test_endpoint_failure_keeps_user_message_and_appends_error(engine, endpoint):
    await engine.load(CONV)
    endpoint.results.append(EndpointError("boom", status_code=502))

    reply = await engine.submit("hello")

    assert reply is not None and reply.content == DEFAULT_FAILURE_TEXT
    user_message, error_message = engine.visible_messages
    assert user_message.content == "hello" and is_temporary_id(user_message.id)
    assert error_message.role == "assistant"


@pytest.mark.asyncio
async def test_partial_success_swaps_user_id_and_shows_server_error(engine, endpoint):
    await engine.load(CONV)
    endpoint.results.append(
        SubmitResult(conversation_id=CONV, user_message_id="u-1", reply_text="", error="Failed to generate a reply")
    )

    reply = await engine.submit("hello")

    assert reply is not None and reply.content == "Failed to generate a reply"
    assert engine.visible_messages[0].id == "u-1"
    assert engine.visible_messages[1].role == "assistant"


@pytest.mark.asyncio
async def test_first_submit_adopts_conversation_and_subscribes(engine, endpoint, store):
    await engine.load(None)
    endpoint.results.append(
        SubmitResult(conversation_id=CONV, user_message_id="u-1", assistant_message_id="a-1", reply_text="hi")
    )

    await engine.submit("hello")

    assert engine.conversation_id == CONV
    assert store.subscriptions == [CONV]
    assert endpoint.calls == [(None, "hello")]

    store.handler(update(user_row("u-1", "hello", annotation={"anger": 1})))
    assert engine.visible_messages[0].annotation == {"anger": 1}


@pytest.mark.asyncio
async def test_reply_for_another_conversation_is_not_applied(engine, endpoint, store):
    endpoint.results.extend(
        [
            SubmitResult(conversation_id=CONV, user_message_id="u-1", assistant_message_id="a-1", reply_text="r1"),
            SubmitResult(conversation_id="c-2", user_message_id="u-2", assistant_message_id="a-2", reply_text="r2"),
        ]
    )
    first = await start_submit(engine, endpoint, "one")
    second = await start_submit(engine, endpoint, "two")
    _, second_temp = [m.id for m in engine.visible_messages]

    endpoint.gate.set()
    assert (await first).id == "a-1"
    assert await second is None

    assert engine.conversation_id == CONV
    assert snapshot(engine) == [("u-1", "user", "one"), (second_temp, "user", "two"), ("a-1", "assistant", "r1")]
    assert store.subscriptions == [CONV]


@pytest.mark.asyncio
async def test_load_replaces_list_and_skips_system_rows(engine, store):
    store.history[CONV] = [
        ChangeRow(id="s-1", role="system", content="prompt", conversation_id=CONV),
        user_row("u-1", "hello"),
        assistant_row("a-1", "hi"),
    ]

    assert await engine.load(CONV) is True
    assert engine.messages[0].id == SYSTEM_MESSAGE_ID
    assert snapshot(engine) == [("u-1", "user", "hello"), ("a-1", "assistant", "hi")]
    assert store.subscriptions == [CONV]

    assert await engine.load(CONV) is True
    assert snapshot(engine) == [("u-1", "user", "hello"), ("a-1", "assistant", "hi")]
    assert store.subscriptions == [CONV]


@pytest.mark.asyncio
async def test_load_failure_leaves_state_unchanged(engine, store):
    store.history[CONV] = [user_row("u-1", "hello")]
    await engine.load(CONV)

    store.fail = True
    assert await engine.load(CONV) is False
    assert engine.conversation_id == CONV
    assert snapshot(engine) == [("u-1", "user", "hello")]
    assert store.subscriptions == [CONV]


@pytest.mark.asyncio
async def test_failed_load_after_switch_keeps_new_conversation_active(engine, store):
    store.history[CONV] = [user_row("u-1", "hello")]
    await engine.load(CONV)

    store.fail = True
    assert await engine.load("c-2") is False

    assert engine.conversation_id == "c-2"
    assert engine.visible_messages == ()
    assert store.unsubscribed == [CONV]
    assert store.subscriptions == [CONV, "c-2"]


@pytest.mark.asyncio
async def test_latest_activate_wins_when_loads_overlap(engine, store):
    store.history["c-a"] = [user_row("ua-1", "from a")]
    store.history["c-b"] = [user_row("ub-1", "from b")]
    store.load_gates = {"c-a": asyncio.Event(), "c-b": asyncio.Event()}

    first = asyncio.create_task(engine.activate("c-a"))
    await asyncio.sleep(0)
    second = asyncio.create_task(engine.activate("c-b"))
    await asyncio.sleep(0)

    # The old feed is torn down before the new one starts.
    assert store.subscriptions == ["c-a", "c-b"]
    assert store.unsubscribed == ["c-a"]

    store.load_gates["c-a"].set()
    assert await first is False
    assert engine.conversation_id == "c-b"
    assert engine.visible_messages == ()

    store.load_gates["c-b"].set()
    assert await second is True
    assert engine.conversation_id == "c-b"
    assert snapshot(engine) == [("ub-1", "user", "from b")]


@pytest.mark.asyncio
async def test_backfill_appends_missing_rows_in_store_order(engine, store):
    store.history[CONV] = [user_row("u-1", "hello"), assistant_row("a-1", "hi")]
    await engine.load(CONV)
    store.history[CONV] += [user_row("u-2", "again"), assistant_row("a-2", "sure")]
    store.handler(insert(assistant_row("a-2", "sure")))

    added = await engine.backfill()

    assert added == 1
    assert [m.id for m in engine.visible_messages] == ["u-1", "a-1", "a-2", "u-2"]
    assert await engine.backfill() == 0


@pytest.mark.asyncio
async def test_backfill_upgrades_optimistic_entry_instead_of_duplicating(engine, endpoint, store):
    await engine.load(CONV)
    endpoint.results.append(
        SubmitResult(conversation_id=CONV, user_message_id="u-1", assistant_message_id="a-1", reply_text="hi")
    )
    task = await start_submit(engine, endpoint, "hello")
    store.history[CONV] = [user_row("u-1", "hello", annotation={"anger": 3})]

    assert await engine.backfill() == 1
    [message] = engine.visible_messages
    assert message.id == "u-1"
    assert message.annotation == {"anger": 3}

    endpoint.gate.set()
    await task
    assert snapshot(engine) == [("u-1", "user", "hello"), ("a-1", "assistant", "hi")]


@pytest.mark.asyncio
async def test_backfill_fills_missing_annotation(engine, store):
    store.history[CONV] = [user_row("u-1", "hello")]
    await engine.load(CONV)
    store.history[CONV] = [user_row("u-1", "hello", annotation={"anger": 5})]

    assert await engine.backfill() == 0
    assert engine.visible_messages[0].annotation == {"anger": 5}


@pytest.mark.asyncio
async def test_backfill_failure_is_soft(engine, store):
    store.history[CONV] = [user_row("u-1", "hello")]
    await engine.load(CONV)
    store.fail = True

    assert await engine.backfill() == 0
    assert snapshot(engine) == [("u-1", "user", "hello")]


@pytest.mark.asyncio
async def test_backfill_without_conversation_is_noop(engine):
    assert await engine.backfill() == 0


@pytest.mark.asyncio
async def test_activate_loads_and_backfills(engine, store):
    store.history[CONV] = [user_row("u-1", "hello"), assistant_row("a-1", "hi")]

    assert await engine.activate(CONV) is True
    assert snapshot(engine) == [("u-1", "user", "hello"), ("a-1", "assistant", "hi")]
    assert engine.is_subscribed


@pytest.mark.asyncio
async def test_switch_tears_down_subscription_and_discards_in_flight_submit(engine, endpoint, store):
    await engine.activate(CONV)
    endpoint.results.append(
        SubmitResult(conversation_id=CONV, user_message_id="u-1", assistant_message_id="a-1", reply_text="hi")
    )
    task = await start_submit(engine, endpoint, "hello")
    old_handler = store.handler
    old_handler(update(user_row("u-7", "never seen", annotation={"score": 1})))
    assert engine.pending_annotations

    store.history["c-2"] = [user_row("u-20", "other")]
    await engine.activate("c-2")

    assert store.unsubscribed == [CONV]
    assert store.subscriptions == [CONV, "c-2"]
    assert dict(engine.pending_annotations) == {}

    endpoint.gate.set()
    assert await task is None
    assert snapshot(engine) == [("u-20", "user", "other")]


@pytest.mark.asyncio
async def test_close_is_idempotent(engine, store):
    await engine.activate(CONV)

    engine.close()
    engine.close()

    assert store.unsubscribed == [CONV]
    assert not engine.is_subscribed


@pytest.mark.asyncio
async def test_mixed_delivery_never_displays_duplicate_ids(engine, endpoint, store):
    store.history[CONV] = [user_row("u-0", "earlier"), assistant_row("a-0", "reply")]
    await engine.activate(CONV)
    endpoint.results.extend(
        [
            SubmitResult(conversation_id=CONV, user_message_id="u-1", assistant_message_id="a-1", reply_text="r1"),
            SubmitResult(conversation_id=CONV, user_message_id="u-2", assistant_message_id="a-2", reply_text="r2"),
        ]
    )
    first = await start_submit(engine, endpoint, "one")
    second = await start_submit(engine, endpoint, "two")

    store.handler(insert(user_row("u-2", "two")))
    store.handler(insert(user_row("u-1", "one")))
    store.handler(insert(assistant_row("a-1", "r1")))
    store.handler(update(user_row("u-2", "two", annotation={"anger": 2})))
    store.history[CONV] += [user_row("u-1", "one"), assistant_row("a-1", "r1"), user_row("u-2", "two")]
    await engine.backfill()

    endpoint.gate.set()
    await asyncio.gather(first, second)
    store.handler(insert(assistant_row("a-2", "r2")))
    await engine.backfill()

    ids = [m.id for m in engine.visible_messages]
    assert len(ids) == len(set(ids))
    assert ids == ["u-0", "a-0", "u-1", "u-2", "a-1", "a-2"]
    assert engine.visible_messages[3].annotation == {"anger": 2}
