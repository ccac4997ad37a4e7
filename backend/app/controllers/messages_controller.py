import logging
from typing import List

from ..db import schemas
from ..store.row_store import SqlRowStore, eq

logger = logging.getLogger(__name__)

MESSAGES = "chat_messages"


def message_sort_key(message: schemas.ChatMessage):
    return (message.created_at, message.id)


async def list_messages(store: SqlRowStore, room_id: str) -> List[schemas.ChatMessage]:
    rows = await store.select(MESSAGES, [eq("room_id", room_id)], order_by=[("created_at", "asc"), ("id", "asc")])
    return [schemas.ChatMessage.model_validate(r) for r in rows]


async def send_message(store: SqlRowStore, room_id: str, sender_id: str, content: str) -> None:
    # The stored row reaches the sender through the change feed, not through this call.
    if not content or not content.strip():
        logger.debug(f"Ignoring blank message room_id={room_id} sender_id={sender_id}")
        return
    await store.insert(MESSAGES, {
        "room_id": room_id,
        "sender_id": sender_id,
        "content": content,
    })
    logger.info(f"Message sent room_id={room_id} sender_id={sender_id}")
