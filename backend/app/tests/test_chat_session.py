import asyncio
import datetime

import pytest

from app.controllers import chat_state_controller, chats_controller, messages_controller
from app.core.errors import StoreError, SubscriptionError
from app.realtime.change_feed import ChangeEvent
from app.realtime.chat_session import ChatSession, SubscriptionState


def make_session(identity, store, feed):
    return ChatSession(identity, store, feed, subscribe_attempts=3, backoff_base=0, backoff_max=0)


def record(session):
    events = []

    async def _record(kind, payload):
        events.append((kind, payload))

    session.add_listener(_record)
    return events


def notices(events):
    return [payload for kind, payload in events if kind == "notice"]


async def _room(store, student, recruiter):
    return await chats_controller.find_or_create_room(store.as_identity(student.id), student, recruiter.id)


@pytest.mark.asyncio
async def test_start_loads_rooms_and_unread(store, feed, student, recruiter):
    room = await _room(store, student, recruiter)
    await messages_controller.send_message(store.as_identity(recruiter.id), room.id, recruiter.id, "Welcome")
    session = make_session(student, store, feed)

    await session.start()

    assert [r.id for r in session.chat_rooms] == [room.id]
    assert session.unread_count == 1
    assert session.unread_by_room == {room.id: 1}
    assert session.loading_rooms is False
    assert session.states["rooms"] == SubscriptionState.ACTIVE
    assert session.states["unread"] == SubscriptionState.ACTIVE
    assert session.states["messages"] == SubscriptionState.IDLE
    await session.close()


@pytest.mark.asyncio
async def test_opening_room_loads_history_and_clears_unread(store, feed, student, recruiter):
    room = await _room(store, student, recruiter)
    as_recruiter = store.as_identity(recruiter.id)
    await messages_controller.send_message(as_recruiter, room.id, recruiter.id, "Welcome")
    await messages_controller.send_message(as_recruiter, room.id, recruiter.id, "Any questions?")
    session = make_session(student, store, feed)
    await session.start()

    await session.select_room(room.id)
    await feed.drain()

    assert session.current_room.id == room.id
    assert [m.content for m in session.messages] == ["Welcome", "Any questions?"]
    assert all(m.is_read for m in session.messages)
    assert session.loading_messages is False
    assert session.unread_count == 0
    assert session.states["messages"] == SubscriptionState.ACTIVE
    await session.close()


@pytest.mark.asyncio
async def test_incoming_message_is_appended_and_marked_read(store, feed, student, recruiter):
    room = await _room(store, student, recruiter)
    session = make_session(student, store, feed)
    await session.start()
    await session.select_room(room.id)
    await feed.drain()

    await messages_controller.send_message(store.as_identity(recruiter.id), room.id, recruiter.id, "Are you free Friday?")
    await feed.drain()

    assert [m.content for m in session.messages] == ["Are you free Friday?"]
    assert session.unread_count == 0
    assert await chat_state_controller.count_unread(store.as_identity(student.id), [room.id], student.id) == 0
    await session.close()


@pytest.mark.asyncio
async def test_own_message_arrives_through_the_feed(store, feed, student, recruiter):
    room = await _room(store, student, recruiter)
    session = make_session(student, store, feed)
    await session.start()
    await session.select_room(room.id)
    await feed.drain()

    await session.send_message("Thanks!")
    await feed.drain()
    assert [m.content for m in session.messages] == ["Thanks!"]
    assert session.messages[0].sender_id == student.id
    assert session.messages[0].is_read is False
    await session.close()


@pytest.mark.asyncio
async def test_switching_rooms_discards_stale_history(store, feed, people, monkeypatch):
    recruiter = people["recruiter"]
    room_x = await _room(store, people["student"], recruiter)
    room_y = await _room(store, people["other_student"], recruiter)
    await messages_controller.send_message(store.as_identity(people["student"].id), room_x.id, people["student"].id, "from alice")
    await messages_controller.send_message(store.as_identity(people["other_student"].id), room_y.id, people["other_student"].id, "from bob")

    real_list = messages_controller.list_messages
    x_loading = asyncio.Event()
    release_x = asyncio.Event()

    async def gated_list(store, room_id):
        result = await real_list(store, room_id)
        if room_id == room_x.id:
            x_loading.set()
            await release_x.wait()
        return result

    monkeypatch.setattr(messages_controller, "list_messages", gated_list)
    session = make_session(recruiter, store, feed)
    await session.start()

    first = asyncio.create_task(session.select_room(room_x.id))
    await x_loading.wait()
    await session.select_room(room_y.id)
    release_x.set()
    await first
    await feed.drain()

    assert session.current_room.id == room_y.id
    assert [m.content for m in session.messages] == ["from bob"]
    assert session.loading_messages is False
    room_filters = [s.filter for s in feed.table_subscriptions["chat_messages"] if s.filter]
    assert room_filters == [{"room_id": room_y.id}]
    # the abandoned room was never marked read
    assert await chat_state_controller.count_unread(store.as_identity(recruiter.id), [room_x.id], recruiter.id) == 1
    await session.close()


@pytest.mark.asyncio
async def test_out_of_order_events_are_sorted_and_deduplicated(store, feed, student, recruiter):
    room = await _room(store, student, recruiter)
    session = make_session(student, store, feed)
    await session.select_room(room.id)
    base = datetime.datetime(2024, 1, 1, 9, 0)

    def row(message_id, minutes, content):
        return {
            "id": message_id,
            "room_id": room.id,
            "sender_id": student.id,
            "content": content,
            "created_at": base + datetime.timedelta(minutes=minutes),
            "is_read": False,
        }

    feed.publish(ChangeEvent("INSERT", "chat_messages", new_row=row("m2", 5, "second")))
    feed.publish(ChangeEvent("INSERT", "chat_messages", new_row=row("m1", 1, "first")))
    feed.publish(ChangeEvent("INSERT", "chat_messages", new_row=row("m2", 5, "second")))
    await feed.drain()

    assert [m.id for m in session.messages] == ["m1", "m2"]
    await session.close()


@pytest.mark.asyncio
async def test_two_party_unread_scenario(store, feed, student, recruiter):
    s_student = make_session(student, store, feed)
    s_recruiter = make_session(recruiter, store, feed)
    await s_student.start()
    await s_recruiter.start()

    room_id = await s_student.find_or_create_room(recruiter.id)
    await feed.drain()
    assert [r.id for r in s_recruiter.chat_rooms] == [room_id]

    await s_student.send_message("Hi")
    await feed.drain()
    await s_student.select_room(None)
    await messages_controller.send_message(store.as_identity(recruiter.id), room_id, recruiter.id, "Hello back")
    await feed.drain()

    assert s_student.unread_count == 1
    assert s_recruiter.unread_count == 1

    await s_student.select_room(room_id)
    await feed.drain()
    assert s_student.unread_count == 0
    assert s_recruiter.unread_count == 1

    await s_recruiter.select_room(room_id)
    await feed.drain()
    assert s_recruiter.unread_count == 0
    assert s_recruiter.unread_by_room == {room_id: 0}

    await s_student.close()
    await s_recruiter.close()


@pytest.mark.asyncio
async def test_find_or_create_selects_and_prepends(store, feed, people):
    recruiter = people["recruiter"]
    existing = await _room(store, people["other_student"], recruiter)
    session = make_session(recruiter, store, feed)
    await session.start()

    room_id = await session.find_or_create_room(people["student"].id, job_id="job-7")

    assert session.current_room.id == room_id
    assert [r.id for r in session.chat_rooms] == [room_id, existing.id]
    assert session.current_room.job_id == "job-7"
    await session.close()


@pytest.mark.asyncio
async def test_invalid_commands_surface_notices(store, feed, student):
    session = make_session(student, store, feed)
    events = record(session)
    await session.start()

    assert await session.find_or_create_room(student.id) is None
    await session.send_message("hello?")
    await session.select_room("no-such-room")

    assert [n["code"] for n in notices(events)] == ["invalid_operation"] * 3
    assert notices(events)[0]["message"] == "cannot chat with yourself"
    assert session.current_room is None
    await session.close()


@pytest.mark.asyncio
async def test_close_resets_view_and_unsubscribes(store, feed, student, recruiter):
    room = await _room(store, student, recruiter)
    await messages_controller.send_message(store.as_identity(recruiter.id), room.id, recruiter.id, "Welcome")
    session = make_session(student, store, feed)
    events = record(session)
    await session.start()
    await session.select_room(room.id)
    await feed.drain()

    await session.close()

    assert session.chat_rooms == []
    assert session.current_room is None
    assert session.messages == []
    assert session.unread_count == 0
    assert feed.table_subscriptions == {}
    assert set(session.states.values()) == {SubscriptionState.IDLE}
    assert events[-1][0] == "reset"


@pytest.mark.asyncio
async def test_subscribe_retries_with_backoff(store, feed, student, monkeypatch):
    real_subscribe = feed.subscribe
    attempts = {"n": 0}

    async def flaky_subscribe(*args, **kwargs):
        attempts["n"] += 1
        if attempts["n"] <= 2:
            raise SubscriptionError("handshake failed")
        return await real_subscribe(*args, **kwargs)

    monkeypatch.setattr(feed, "subscribe", flaky_subscribe)
    session = make_session(student, store, feed)

    await session.start()

    assert attempts["n"] == 4
    assert session.states["rooms"] == SubscriptionState.ACTIVE
    assert session.states["unread"] == SubscriptionState.ACTIVE
    await session.close()


@pytest.mark.asyncio
async def test_unavailable_feed_keeps_last_known_view(store, feed, student, recruiter):
    room = await _room(store, student, recruiter)
    await feed.close()
    session = make_session(student, store, feed)
    events = record(session)

    await session.start()

    assert [r.id for r in session.chat_rooms] == [room.id]
    assert session.states["rooms"] == SubscriptionState.IDLE
    assert notices(events)[0]["code"] == "subscription_failure"


@pytest.mark.asyncio
async def test_unread_count_kept_when_store_fails(store, feed, student, recruiter, monkeypatch):
    room = await _room(store, student, recruiter)
    await messages_controller.send_message(store.as_identity(recruiter.id), room.id, recruiter.id, "Welcome")
    session = make_session(student, store, feed)
    await session.start()
    assert session.unread_count == 1

    async def broken(*args, **kwargs):
        raise StoreError("connection reset")

    monkeypatch.setattr(chat_state_controller, "count_unread_by_room", broken)
    await session.refresh_unread()

    assert session.unread_count == 1
    await session.close()


@pytest.mark.asyncio
@pytest.mark.parametrize("ticks", [1, 2, 5])
async def test_close_during_start_leaves_nothing_subscribed(store, feed, student, recruiter, ticks):
    await _room(store, student, recruiter)
    session = make_session(student, store, feed)

    starting = asyncio.create_task(session.start())
    for _ in range(ticks):
        await asyncio.sleep(0)
    await session.close()
    await starting
    await feed.drain()

    assert feed.table_subscriptions == {}
    assert set(session.states.values()) == {SubscriptionState.IDLE}
    assert session.chat_rooms == []
    assert session.started is False


@pytest.mark.asyncio
async def test_room_created_during_first_fetch_is_picked_up(store, feed, student, recruiter, monkeypatch):
    real_list = chats_controller.list_rooms
    calls = {"n": 0}

    async def list_then_create(store_, identity):
        calls["n"] += 1
        rooms = await real_list(store_, identity)
        if calls["n"] == 1:
            await _room(store, student, recruiter)
        return rooms

    monkeypatch.setattr(chats_controller, "list_rooms", list_then_create)
    session = make_session(student, store, feed)

    await session.start()
    await feed.drain()

    assert len(session.chat_rooms) == 1
    assert session.chat_rooms[0].partner_name == "acme"
    await session.close()


def _gated_subscribe(feed, blocked_room_id):
    real_subscribe = feed.subscribe
    entered = asyncio.Event()
    release = asyncio.Event()

    async def subscribe(table, callback, filter=None, event_types=("*",)):
        if filter and filter.get("room_id") == blocked_room_id:
            entered.set()
            await release.wait()
        return await real_subscribe(table, callback, filter=filter, event_types=event_types)

    return subscribe, entered, release


@pytest.mark.asyncio
async def test_stale_handshake_after_deselect_stays_idle(store, feed, student, recruiter, monkeypatch):
    room = await _room(store, student, recruiter)
    subscribe, entered, release = _gated_subscribe(feed, room.id)
    monkeypatch.setattr(feed, "subscribe", subscribe)
    session = make_session(student, store, feed)
    await session.start()

    selecting = asyncio.create_task(session.select_room(room.id))
    await entered.wait()
    await session.select_room(None)
    release.set()
    await selecting
    await feed.drain()

    assert session.states["messages"] == SubscriptionState.IDLE
    assert session.current_room is None
    assert all(not s.filter for s in feed.table_subscriptions["chat_messages"])
    await session.close()


@pytest.mark.asyncio
async def test_stale_handshake_keeps_newer_room_active(store, feed, people, monkeypatch):
    recruiter = people["recruiter"]
    room_x = await _room(store, people["student"], recruiter)
    room_y = await _room(store, people["other_student"], recruiter)
    subscribe, entered, release = _gated_subscribe(feed, room_x.id)
    monkeypatch.setattr(feed, "subscribe", subscribe)
    session = make_session(recruiter, store, feed)
    await session.start()

    selecting = asyncio.create_task(session.select_room(room_x.id))
    await entered.wait()
    await session.select_room(room_y.id)
    release.set()
    await selecting
    await feed.drain()

    assert session.states["messages"] == SubscriptionState.ACTIVE
    assert session.current_room.id == room_y.id
    room_filters = [s.filter for s in feed.table_subscriptions["chat_messages"] if s.filter]
    assert room_filters == [{"room_id": room_y.id}]
    await session.close()
