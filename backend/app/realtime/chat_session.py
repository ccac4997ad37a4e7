"""Per-identity chat session: subscriptions plus the view state the UI renders.

A ``ChatSession`` is created when an identity becomes available and closed
when it goes away. All view-state writes happen in its own handlers on the
event loop; the controllers it calls only touch the row store, and their
effects come back through change-feed events.
"""

import asyncio
import bisect
import logging
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional

from ..controllers import chat_state_controller, chats_controller, messages_controller
from ..core.config import get_settings
from ..core.errors import ChatError, InvalidOperation, StoreError, SubscriptionError
from ..db import schemas
from ..store.row_store import SqlRowStore
from .change_feed import ChangeEvent, ChangeFeed, Subscription

logger = logging.getLogger(__name__)

Listener = Callable[[str, dict], Awaitable[None]]


class SubscriptionState(str, Enum):
    IDLE = "idle"
    SUBSCRIBING = "subscribing"
    ACTIVE = "active"
    UNSUBSCRIBED = "unsubscribed"


class ChatSession:
    def __init__(
        self,
        identity: schemas.Identity,
        store: SqlRowStore,
        feed: ChangeFeed,
        subscribe_attempts: Optional[int] = None,
        backoff_base: Optional[float] = None,
        backoff_max: Optional[float] = None,
    ):
        settings = get_settings()
        self.identity = identity
        self.store = store.as_identity(identity.id)
        self.feed = feed
        self.subscribe_attempts = subscribe_attempts or settings.SUBSCRIBE_MAX_ATTEMPTS
        self.backoff_base = settings.SUBSCRIBE_BACKOFF_BASE_SECONDS if backoff_base is None else backoff_base
        self.backoff_max = settings.SUBSCRIBE_BACKOFF_MAX_SECONDS if backoff_max is None else backoff_max

        # view state
        self.chat_rooms: List[schemas.ChatRoom] = []
        self.current_room: Optional[schemas.ChatRoom] = None
        self.messages: List[schemas.ChatMessage] = []
        self.unread_count = 0
        self.unread_by_room: Dict[str, int] = {}
        self.loading_rooms = False
        self.loading_messages = False

        self.states: Dict[str, SubscriptionState] = {
            "rooms": SubscriptionState.IDLE,
            "messages": SubscriptionState.IDLE,
            "unread": SubscriptionState.IDLE,
        }
        self._subscriptions: Dict[str, Subscription] = {}
        # bumped on every state write; a stale handshake only restores a state nobody replaced
        self._state_epochs: Dict[str, int] = {name: 0 for name in self.states}
        # bumped by close(); a start() that sees a new generation backs out
        self._generation = 0
        self._listeners: List[Listener] = []
        # bumped on every fetch/selection; a result is applied only if its token is still current
        self._rooms_token = 0
        self._room_token = 0
        self._unread_token = 0
        self.started = False

    # ==== observers ====
    def add_listener(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    async def _emit(self, kind: str, payload: Optional[dict] = None):
        for listener in list(self._listeners):
            try:
                await listener(kind, payload or {})
            except Exception:
                logger.exception(f"Session listener failed kind={kind} user_id={self.identity.id}")

    async def _notice(self, error: ChatError):
        await self._emit("notice", error.to_dict())

    def snapshot(self) -> dict:
        return {
            "chat_rooms": [r.model_dump(mode="json") for r in self.chat_rooms],
            "current_room": self.current_room.model_dump(mode="json") if self.current_room else None,
            "messages": [m.model_dump(mode="json") for m in self.messages],
            "unread_count": self.unread_count,
            "unread_by_room": dict(self.unread_by_room),
            "loading_rooms": self.loading_rooms,
            "loading_messages": self.loading_messages,
        }

    # ==== lifecycle ====
    async def start(self):
        if self.started:
            return
        self.started = True
        generation = self._generation
        logger.info(f"Session start user_id={self.identity.id} role={self.identity.role}")
        # subscribe before the first fetch so no room change falls in between
        try:
            await self._subscribe("rooms", "chat_rooms", self._on_room_change, generation=generation)
            if generation == self._generation:
                await self._subscribe(
                    "unread", "chat_messages", self._on_message_change, event_types=("INSERT", "UPDATE"), generation=generation
                )
        except SubscriptionError as e:
            logger.warning(f"Session degraded user_id={self.identity.id} reason={e.message}")
            await self._notice(e)
        if generation != self._generation:
            logger.info(f"Session closed while starting user_id={self.identity.id}")
            return
        await self.refresh_rooms()

    async def close(self):
        """Drop every subscription and reset the view state."""
        self._generation += 1
        await self._drop_subscriptions()
        self._rooms_token += 1
        self._room_token += 1
        self._unread_token += 1
        self.chat_rooms = []
        self.current_room = None
        self.messages = []
        self.unread_count = 0
        self.unread_by_room = {}
        self.loading_rooms = False
        self.loading_messages = False
        self.started = False
        logger.info(f"Session closed user_id={self.identity.id}")
        await self._emit("reset", self.snapshot())

    async def _drop_subscriptions(self):
        for name in list(self._subscriptions):
            await self._unsubscribe(name)
        for name in self.states:
            self._set_state(name, SubscriptionState.IDLE)

    def _set_state(self, name: str, state: SubscriptionState):
        self._state_epochs[name] += 1
        self.states[name] = state

    async def _subscribe(self, name: str, table: str, callback, filter=None, event_types=("*",), token=None, generation=None):
        previous = self.states[name]
        self._set_state(name, SubscriptionState.SUBSCRIBING)
        epoch = self._state_epochs[name]
        delay = self.backoff_base
        last_error: Optional[SubscriptionError] = None
        for attempt in range(1, self.subscribe_attempts + 1):
            try:
                sub = await self.feed.subscribe(table, callback, filter=filter, event_types=event_types)
                break
            except SubscriptionError as e:
                last_error = e
                logger.warning(f"Subscribe failed name={name} user_id={self.identity.id} attempt={attempt} error={e.message}")
                if attempt < self.subscribe_attempts:
                    await asyncio.sleep(delay)
                    delay = min(delay * 2, self.backoff_max)
        else:
            if self._state_epochs[name] == epoch:
                self._set_state(name, SubscriptionState.IDLE)
            raise SubscriptionError(f"could not subscribe to {table}: {last_error.message if last_error else 'unknown'}")

        stale_room = token is not None and token != self._room_token
        closed = generation is not None and generation != self._generation
        if stale_room or closed:
            # selection moved on or the session closed while the handshake was in flight
            await self.feed.unsubscribe(sub)
            if self._state_epochs[name] == epoch:
                self._set_state(name, previous)
            return None
        self._subscriptions[name] = sub
        self._set_state(name, SubscriptionState.ACTIVE)
        return sub

    async def _unsubscribe(self, name: str):
        sub = self._subscriptions.pop(name, None)
        if sub is None:
            return
        await self.feed.unsubscribe(sub)
        self._set_state(name, SubscriptionState.UNSUBSCRIBED)

    # ==== rooms ====
    async def refresh_rooms(self):
        self._rooms_token += 1
        token = self._rooms_token
        self.loading_rooms = True
        try:
            rooms = await chats_controller.list_rooms(self.store, self.identity)
        except StoreError as e:
            logger.warning(f"Room fetch failed user_id={self.identity.id} error={e.message}")
            await self._notice(e)
            if token == self._rooms_token:
                self.loading_rooms = False
            return
        if token != self._rooms_token:
            logger.debug(f"Discarding stale room list user_id={self.identity.id}")
            return
        self.chat_rooms = rooms
        if self.current_room is not None:
            fresh = next((r for r in rooms if r.id == self.current_room.id), None)
            if fresh is not None:
                self.current_room = fresh
        self.loading_rooms = False
        await self._emit("rooms", {"chat_rooms": [r.model_dump(mode="json") for r in rooms]})
        await self.refresh_unread()

    async def _on_room_change(self, event: ChangeEvent):
        # room volume per identity is small; refetch instead of patching
        await self.refresh_rooms()

    async def find_or_create_room(self, other_party_id: str, job_id: Optional[str] = None) -> Optional[str]:
        try:
            room = await chats_controller.find_or_create_room(self.store, self.identity, other_party_id, job_id)
        except ChatError as e:
            logger.warning(f"Find-or-create failed user_id={self.identity.id} other_id={other_party_id} error={e.message}")
            await self._notice(e)
            return None
        if all(r.id != room.id for r in self.chat_rooms):
            self.chat_rooms.insert(0, room)
            await self._emit("rooms", {"chat_rooms": [r.model_dump(mode="json") for r in self.chat_rooms]})
        await self.select_room(room.id)
        return room.id

    # ==== messages ====
    async def select_room(self, room_id: Optional[str]):
        if room_id is None:
            await self._deselect()
            return
        if self.current_room is not None and self.current_room.id == room_id:
            return
        room = next((r for r in self.chat_rooms if r.id == room_id), None)
        if room is None:
            try:
                room = await chats_controller.get_room(self.store, room_id, self.identity)
            except StoreError as e:
                await self._notice(e)
                return
            if room is None:
                await self._notice(InvalidOperation("room not found"))
                return

        await self._unsubscribe("messages")
        self._room_token += 1
        token = self._room_token
        self.current_room = room
        self.messages = []
        self.loading_messages = True
        await self._emit("room", {"current_room": room.model_dump(mode="json")})

        try:
            await self._subscribe(
                "messages",
                "chat_messages",
                self._message_handler(room.id, token),
                filter={"room_id": room.id},
                event_types=("INSERT",),
                token=token,
            )
        except SubscriptionError as e:
            logger.warning(f"Message subscription failed room_id={room.id} error={e.message}")
            await self._notice(e)
        if token != self._room_token:
            return

        try:
            history = await messages_controller.list_messages(self.store, room.id)
        except StoreError as e:
            logger.warning(f"Message fetch failed room_id={room.id} error={e.message}")
            await self._notice(e)
            if token == self._room_token:
                self.loading_messages = False
                await self._emit("messages", {"room_id": room.id, "messages": self._dump_messages()})
            return
        if token != self._room_token:
            logger.debug(f"Discarding stale messages room_id={room.id}")
            return

        # keep anything the feed delivered while the history was loading
        merged = {m.id: m for m in history}
        for m in self.messages:
            merged.setdefault(m.id, m)
        self.messages = sorted(merged.values(), key=messages_controller.message_sort_key)
        self.loading_messages = False
        await self._emit("messages", {"room_id": room.id, "messages": self._dump_messages()})
        await self._mark_read(room.id)

    async def _deselect(self):
        await self._unsubscribe("messages")
        self._set_state("messages", SubscriptionState.IDLE)
        self._room_token += 1
        self.current_room = None
        self.messages = []
        self.loading_messages = False
        await self._emit("room", {"current_room": None})

    def _message_handler(self, room_id: str, token: int):
        async def _on_insert(event: ChangeEvent):
            if token != self._room_token or event.new_row is None:
                return
            message = schemas.ChatMessage.model_validate(event.new_row)
            if message.room_id != room_id:
                return
            if self._insert_message(message):
                await self._emit("message", {"room_id": room_id, "message": message.model_dump(mode="json")})
            if message.sender_id != self.identity.id and not message.is_read:
                await self._mark_read(room_id, [message.id])

        return _on_insert

    def _insert_message(self, message: schemas.ChatMessage) -> bool:
        if any(m.id == message.id for m in self.messages):
            return False
        keys = [messages_controller.message_sort_key(m) for m in self.messages]
        self.messages.insert(bisect.bisect_right(keys, messages_controller.message_sort_key(message)), message)
        return True

    def _dump_messages(self):
        return [m.model_dump(mode="json") for m in self.messages]

    async def send_message(self, content: str):
        if self.current_room is None:
            await self._notice(InvalidOperation("no conversation selected"))
            return
        try:
            await messages_controller.send_message(self.store, self.current_room.id, self.identity.id, content)
        except StoreError as e:
            logger.warning(f"Send failed room_id={self.current_room.id} user_id={self.identity.id} error={e.message}")
            await self._notice(e)

    # ==== read state ====
    async def _mark_read(self, room_id: str, message_ids: Optional[List[str]] = None):
        try:
            await chat_state_controller.mark_room_read(self.store, room_id, self.identity.id, message_ids)
        except StoreError as e:
            logger.warning(f"Mark read failed room_id={room_id} user_id={self.identity.id} error={e.message}")

    async def refresh_unread(self):
        self._unread_token += 1
        token = self._unread_token
        room_ids = [r.id for r in self.chat_rooms]
        try:
            counts = await chat_state_controller.count_unread_by_room(self.store, room_ids, self.identity.id)
        except StoreError as e:
            # keep the last known counts
            logger.warning(f"Unread count failed user_id={self.identity.id} error={e.message}")
            return
        if token != self._unread_token:
            return
        self.unread_by_room = counts
        self.unread_count = sum(counts.values())
        await self._emit("unread", {"unread_count": self.unread_count, "unread_by_room": dict(counts)})

    async def _on_message_change(self, event: ChangeEvent):
        row = event.new_row or {}
        if row.get("room_id") not in {r.id for r in self.chat_rooms}:
            return
        if event.event_type == "UPDATE":
            for i, m in enumerate(self.messages):
                if m.id == row.get("id"):
                    self.messages[i] = schemas.ChatMessage.model_validate(row)
                    break
        await self.refresh_unread()
