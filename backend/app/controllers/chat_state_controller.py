import logging
from collections import Counter
from typing import Dict, Iterable, List, Optional

from ..store.row_store import SqlRowStore, eq, in_, neq

logger = logging.getLogger(__name__)

MESSAGES = "chat_messages"


def _unread_filters(room_ids: List[str], viewer_id: str):
    return [in_("room_id", room_ids), eq("is_read", False), neq("sender_id", viewer_id)]


async def mark_room_read(
    store: SqlRowStore,
    room_id: str,
    viewer_id: str,
    message_ids: Optional[Iterable[str]] = None,
) -> int:
    """Mark the other participant's unread messages in a room as read.

    With ``message_ids`` only those messages are considered. Returns how many
    rows were flipped; calling it again once nothing is unread is a no-op.
    """
    filters = _unread_filters([room_id], viewer_id)
    if message_ids is not None:
        ids = list(message_ids)
        if not ids:
            return 0
        filters.append(in_("id", ids))
    unread = await store.select(MESSAGES, filters)
    if not unread:
        return 0
    unread_ids = [m["id"] for m in unread]
    updated = await store.update(MESSAGES, [in_("id", unread_ids), eq("is_read", False)], {"is_read": True})
    logger.info(f"Marked read room_id={room_id} viewer_id={viewer_id} count={len(updated)}")
    return len(updated)


async def count_unread(store: SqlRowStore, room_ids: Iterable[str], viewer_id: str) -> int:
    room_ids = list(room_ids)
    if not room_ids:
        return 0
    return await store.count(MESSAGES, _unread_filters(room_ids, viewer_id))


async def count_unread_by_room(store: SqlRowStore, room_ids: Iterable[str], viewer_id: str) -> Dict[str, int]:
    room_ids = list(room_ids)
    if not room_ids:
        return {}
    rows = await store.select(MESSAGES, _unread_filters(room_ids, viewer_id))
    counts = Counter(r["room_id"] for r in rows)
    return {room_id: counts.get(room_id, 0) for room_id in room_ids}
