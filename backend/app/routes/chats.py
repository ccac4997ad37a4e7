import logging
from fastapi import APIRouter, Depends, HTTPException, status
from typing import List

from ..core.errors import ChatError, InvalidOperation, StoreError
from ..db import schemas
from ..controllers import chats_controller, messages_controller, chat_state_controller
from ..deps.auth import get_identity
from ..deps.store import get_store
from ..store.row_store import SqlRowStore

router = APIRouter()
logger = logging.getLogger(__name__)


def _http_error(e: ChatError) -> HTTPException:
    if isinstance(e, InvalidOperation):
        return HTTPException(status_code=400, detail=e.message)
    if isinstance(e, StoreError) and e.code == "permission_denied":
        return HTTPException(status_code=403, detail="Forbidden")
    logger.warning(f"Store failure code={e.code} message={e.message}")
    return HTTPException(status_code=503, detail="Chat service unavailable")


@router.get("/chats/", response_model=List[schemas.ChatRoom])
async def get_user_rooms(identity: schemas.Identity = Depends(get_identity), store: SqlRowStore = Depends(get_store)):
    try:
        return await chats_controller.list_rooms(store.as_identity(identity.id), identity)
    except ChatError as e:
        raise _http_error(e)


@router.post("/chats/rooms", response_model=schemas.ChatRoom)
async def find_or_create_room(body: schemas.RoomRequest, identity: schemas.Identity = Depends(get_identity), store: SqlRowStore = Depends(get_store)):
    try:
        return await chats_controller.find_or_create_room(store.as_identity(identity.id), identity, body.other_user_id, body.job_id)
    except ChatError as e:
        raise _http_error(e)


@router.get("/chats/unread-counts", response_model=schemas.UnreadCountsOut)
async def get_unread_counts(identity: schemas.Identity = Depends(get_identity), store: SqlRowStore = Depends(get_store)):
    scoped = store.as_identity(identity.id)
    try:
        rooms = await chats_controller.list_rooms(scoped, identity)
        counts = await chat_state_controller.count_unread_by_room(scoped, [r.id for r in rooms], identity.id)
    except ChatError as e:
        raise _http_error(e)
    return schemas.UnreadCountsOut(
        total=sum(counts.values()),
        rooms=[schemas.RoomUnreadOut(room_id=room_id, unread_count=cnt) for room_id, cnt in counts.items()],
    )


async def _visible_room(store: SqlRowStore, room_id: str) -> schemas.ChatRoom:
    room = await chats_controller.get_room(store, room_id)
    if room is None:
        raise HTTPException(status_code=404, detail="Chat not found")
    return room


@router.get("/chats/{room_id}/messages", response_model=List[schemas.ChatMessage])
async def list_room_messages(room_id: str, identity: schemas.Identity = Depends(get_identity), store: SqlRowStore = Depends(get_store)):
    scoped = store.as_identity(identity.id)
    try:
        await _visible_room(scoped, room_id)
        return await messages_controller.list_messages(scoped, room_id)
    except ChatError as e:
        raise _http_error(e)


@router.post("/chats/{room_id}/messages", status_code=status.HTTP_202_ACCEPTED)
async def send_room_message(room_id: str, body: schemas.MessageCreate, identity: schemas.Identity = Depends(get_identity), store: SqlRowStore = Depends(get_store)):
    scoped = store.as_identity(identity.id)
    try:
        await _visible_room(scoped, room_id)
        await messages_controller.send_message(scoped, room_id, identity.id, body.content)
    except ChatError as e:
        raise _http_error(e)
    return {"accepted": True}


@router.post("/chats/{room_id}/read", response_model=schemas.MarkReadOut)
async def mark_room_read(room_id: str, identity: schemas.Identity = Depends(get_identity), store: SqlRowStore = Depends(get_store)):
    scoped = store.as_identity(identity.id)
    try:
        await _visible_room(scoped, room_id)
        marked = await chat_state_controller.mark_room_read(scoped, room_id, identity.id)
    except ChatError as e:
        raise _http_error(e)
    return schemas.MarkReadOut(room_id=room_id, marked=marked)
