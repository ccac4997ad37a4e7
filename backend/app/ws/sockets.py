from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, HTTPException, status
import json
import logging

from .ws_manager import manager
from ..db.database import SessionLocal
from ..deps.auth import user_from_token, identity_for
from ..deps.store import get_feed, get_store
from ..realtime.change_feed import ChangeFeed
from ..realtime.chat_session import ChatSession
from ..store.row_store import SqlRowStore

ws_router = APIRouter()
logger = logging.getLogger(__name__)


def _authenticate(token: str):
    # short-lived DB session just for the lookup
    db = SessionLocal()
    try:
        return user_from_token(db, token)
    finally:
        db.close()


async def _dispatch(session: ChatSession, websocket: WebSocket, data: dict):
    t = data.get("type")
    if t == "select_room":
        await session.select_room(data.get("room_id"))
    elif t == "send_message":
        await session.send_message(data.get("content") or "")
    elif t == "find_or_create_room":
        other_id = data.get("other_user_id")
        if not other_id:
            await websocket.send_text(json.dumps({"v": 1, "type": "error", "code": "INVALID_PAYLOAD"}))
            return
        room_id = await session.find_or_create_room(str(other_id), data.get("job_id"))
        await websocket.send_text(json.dumps({"v": 1, "type": "room_resolved", "room_id": room_id}))
    elif t == "refresh_rooms":
        await session.refresh_rooms()
    else:
        await websocket.send_text(json.dumps({"v": 1, "type": "error", "code": "INVALID_PAYLOAD"}))
        logger.warning(f"WS invalid payload user_id={session.identity.id} type={t}")


@ws_router.websocket("/ws")
async def websocket_chat(
    websocket: WebSocket,
    store: SqlRowStore = Depends(get_store),
    feed: ChangeFeed = Depends(get_feed),
):
    token = websocket.query_params.get("token")
    if not token:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    try:
        user = _authenticate(token)
    except HTTPException:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    await websocket.accept()
    logger.info(f"WS accepted user_id={user.id}")

    session = ChatSession(identity_for(user), store, feed)

    async def forward(kind: str, payload: dict):
        await websocket.send_text(json.dumps({"v": 1, "type": kind, **payload}))

    remove_listener = session.add_listener(forward)
    manager.register(user.id, websocket, session)
    try:
        await session.start()
        await websocket.send_text(json.dumps({"v": 1, "type": "snapshot", **session.snapshot()}))
        while True:
            data = await websocket.receive_json()
            await _dispatch(session, websocket, data)
    except WebSocketDisconnect:
        logger.info(f"WS disconnect user_id={user.id}")
    except Exception:
        logger.exception(f"WS error user_id={user.id}")
    finally:
        remove_listener()
        if manager.unregister(user.id, websocket) is not None:
            await session.close()
