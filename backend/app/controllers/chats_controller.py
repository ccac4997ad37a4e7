import logging
from typing import Dict, List, Optional, Tuple

from ..core.errors import InvalidOperation
from ..db import schemas
from ..store.row_store import SqlRowStore, eq, in_

logger = logging.getLogger(__name__)

ROOMS = "chat_rooms"
USERS = "users"

OPPOSITE_ROLE = {"student": "recruiter", "recruiter": "student"}


def participant_pair(identity: schemas.Identity, other_party_id: str) -> Tuple[str, str]:
    """Return (student_id, recruiter_id) for a conversation between identity and other_party_id."""
    if identity.role == "student":
        return identity.id, other_party_id
    if identity.role == "recruiter":
        return other_party_id, identity.id
    raise InvalidOperation("account role not set")


def partner_id(room: schemas.ChatRoom, identity: schemas.Identity) -> str:
    return room.recruiter_id if room.student_id == identity.id else room.student_id


def _display_name(user: dict) -> str:
    return user.get("display_name") or user["username"]


async def _partner_names(store: SqlRowStore, ids: List[str]) -> Dict[str, str]:
    if not ids:
        return {}
    users = await store.select(USERS, [in_("id", sorted(set(ids)))])
    return {u["id"]: _display_name(u) for u in users}


async def _with_partner_names(store: SqlRowStore, identity: schemas.Identity, rooms: List[schemas.ChatRoom]):
    names = await _partner_names(store, [partner_id(r, identity) for r in rooms])
    for room in rooms:
        room.partner_name = names.get(partner_id(room, identity))
    return rooms


async def list_rooms(store: SqlRowStore, identity: schemas.Identity) -> List[schemas.ChatRoom]:
    filters = []
    if identity.role == "student":
        filters.append(eq("student_id", identity.id))
    elif identity.role == "recruiter":
        filters.append(eq("recruiter_id", identity.id))
    # unknown role: the participant policy alone scopes the result
    rows = await store.select(ROOMS, filters, order_by=[("updated_at", "desc"), ("id", "asc")])
    rooms = [schemas.ChatRoom.model_validate(r) for r in rows]
    return await _with_partner_names(store, identity, rooms)


async def get_room(store: SqlRowStore, room_id: str, identity: Optional[schemas.Identity] = None) -> Optional[schemas.ChatRoom]:
    rows = await store.select(ROOMS, [eq("id", room_id)], limit=1)
    if not rows:
        return None
    room = schemas.ChatRoom.model_validate(rows[0])
    if identity is not None:
        await _with_partner_names(store, identity, [room])
    return room


async def _counterpart(store: SqlRowStore, identity: schemas.Identity, other_party_id: str) -> dict:
    rows = await store.select(USERS, [eq("id", other_party_id)], limit=1)
    if not rows:
        raise InvalidOperation("user not found")
    other = rows[0]
    wanted = OPPOSITE_ROLE[identity.role]
    if other["role"] != wanted:
        raise InvalidOperation(f"can only chat with a {wanted}")
    return other


async def find_or_create_room(
    store: SqlRowStore,
    identity: schemas.Identity,
    other_party_id: str,
    job_id: Optional[str] = None,
) -> schemas.ChatRoom:
    if identity.id == other_party_id:
        raise InvalidOperation("cannot chat with yourself")
    student_id, recruiter_id = participant_pair(identity, other_party_id)
    other = await _counterpart(store, identity, other_party_id)

    existing = await store.select(
        ROOMS,
        [eq("student_id", student_id), eq("recruiter_id", recruiter_id)],
        order_by=[("created_at", "asc"), ("id", "asc")],
    )
    if existing:
        if len(existing) > 1:
            logger.warning(f"Duplicate rooms student_id={student_id} recruiter_id={recruiter_id} count={len(existing)}")
        logger.info(f"Found room room_id={existing[0]['id']} user_id={identity.id}")
        room = schemas.ChatRoom.model_validate(existing[0])
    else:
        created = await store.insert(ROOMS, {
            "student_id": student_id,
            "recruiter_id": recruiter_id,
            "job_id": job_id,
        })
        logger.info(f"Created room room_id={created['id']} student_id={student_id} recruiter_id={recruiter_id} job_id={job_id}")
        room = schemas.ChatRoom.model_validate(created)
    room.partner_name = _display_name(other)
    return room
