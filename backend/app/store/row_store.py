"""Row store over SQLAlchemy with row-level access policies.

Rows cross this boundary as plain dicts keyed by column name. Every committed
write is published to the change feed, one event per row, after the
transaction commits.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.errors import StoreError
from ..db import models
from ..realtime.change_feed import ChangeEvent, ChangeFeed

logger = logging.getLogger(__name__)

TABLES = {
    "chat_rooms": models.ChatRoom,
    "chat_messages": models.ChatMessage,
    "users": models.User,
}

# Tables callers may read but never write through the store.
READ_ONLY_TABLES = {"users"}

# Columns never returned from a select.
HIDDEN_COLUMNS = {"users": {"password_hash"}}

# Columns a participant may change on a message row.
MESSAGE_UPDATABLE_COLUMNS = {"is_read"}

Filter = Tuple[str, str, Any]


def eq(column: str, value: Any) -> Filter:
    return (column, "eq", value)


def neq(column: str, value: Any) -> Filter:
    return (column, "neq", value)


def in_(column: str, values: Iterable[Any]) -> Filter:
    return (column, "in", list(values))


def row_to_dict(obj, hidden: Iterable[str] = ()) -> Dict[str, Any]:
    return {c.name: getattr(obj, c.name) for c in obj.__table__.columns if c.name not in hidden}


def _model_for(table: str):
    model = TABLES.get(table)
    if model is None:
        raise StoreError(f"unknown table {table}", code="unknown_table")
    return model


def _column(model, name: str):
    col = model.__table__.columns.get(name)
    if col is None:
        raise StoreError(f"unknown column {model.__tablename__}.{name}", code="unknown_column")
    return getattr(model, name)


def _compile_filters(model, filters: Sequence[Filter]):
    clauses = []
    for column, op, value in filters:
        attr = _column(model, column)
        if op == "eq":
            clauses.append(attr == value)
        elif op == "neq":
            clauses.append(attr != value)
        elif op == "in":
            clauses.append(attr.in_(list(value)))
        else:
            raise StoreError(f"unsupported filter operator {op}", code="bad_filter")
    return clauses


class SqlRowStore:
    """select / count / insert / update against the chat tables.

    ``users`` is exposed read-only, without password hashes, so rooms can be
    checked against the directory.

    A store created with an ``identity_id`` enforces the participant policies:
    rooms are visible to their student and recruiter, messages to the
    participants of their room.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        feed: ChangeFeed,
        identity_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.feed = feed
        self.identity_id = identity_id
        self.timeout = timeout

    def as_identity(self, identity_id: str) -> "SqlRowStore":
        return SqlRowStore(self.session_factory, self.feed, identity_id=identity_id, timeout=self.timeout)

    # ==== policy ====
    def _visible_room_ids(self):
        uid = self.identity_id
        return select(models.ChatRoom.id).where(
            or_(models.ChatRoom.student_id == uid, models.ChatRoom.recruiter_id == uid)
        )

    def _policy_clauses(self, model) -> list:
        if self.identity_id is None:
            return []
        if model is models.ChatRoom:
            return [or_(models.ChatRoom.student_id == self.identity_id, models.ChatRoom.recruiter_id == self.identity_id)]
        if model is models.ChatMessage:
            return [models.ChatMessage.room_id.in_(self._visible_room_ids())]
        return []

    def _check_insert(self, db: Session, model, row: Dict[str, Any]):
        if self.identity_id is None:
            return
        uid = self.identity_id
        if model is models.ChatRoom:
            if uid not in (row.get("student_id"), row.get("recruiter_id")):
                raise StoreError("permission denied for table chat_rooms", code="permission_denied")
        elif model is models.ChatMessage:
            if row.get("sender_id") != uid:
                raise StoreError("permission denied for table chat_messages", code="permission_denied")
            visible = db.execute(
                self._visible_room_ids().where(models.ChatRoom.id == row.get("room_id"))
            ).first()
            if visible is None:
                raise StoreError("permission denied for table chat_messages", code="permission_denied")

    def _check_update(self, model, patch: Dict[str, Any]):
        if self.identity_id is None:
            return
        if model is models.ChatRoom:
            raise StoreError("permission denied for table chat_rooms", code="permission_denied")
        if model is models.ChatMessage and set(patch) - MESSAGE_UPDATABLE_COLUMNS:
            raise StoreError("permission denied for table chat_messages", code="permission_denied")

    # ==== operations ====
    async def select(
        self,
        table: str,
        filters: Sequence[Filter] = (),
        order_by: Sequence[Tuple[str, str]] = (),
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        model = _model_for(table)
        hidden = HIDDEN_COLUMNS.get(table, ())

        def _select(db: Session, events: List[ChangeEvent]):
            stmt = select(model).where(*_compile_filters(model, filters), *self._policy_clauses(model))
            for column, direction in order_by:
                attr = _column(model, column)
                stmt = stmt.order_by(attr.desc() if direction == "desc" else attr.asc())
            if limit is not None:
                stmt = stmt.limit(limit)
            return [row_to_dict(obj, hidden) for obj in db.execute(stmt).scalars().all()]

        return await self._run(_select)

    async def count(self, table: str, filters: Sequence[Filter] = ()) -> int:
        model = _model_for(table)

        def _count(db: Session, events: List[ChangeEvent]):
            stmt = select(func.count()).select_from(model).where(
                *_compile_filters(model, filters), *self._policy_clauses(model)
            )
            return int(db.execute(stmt).scalar_one())

        return await self._run(_count)

    async def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        model = _model_for(table)
        _check_writable(table)

        def _insert(db: Session, events: List[ChangeEvent]):
            for column in row:
                _column(model, column)
            self._check_insert(db, model, row)
            obj = model(**row)
            db.add(obj)
            db.commit()
            db.refresh(obj)
            created = row_to_dict(obj)
            events.append(ChangeEvent("INSERT", table, new_row=created))
            trigger = AFTER_INSERT.get(table)
            if trigger is not None:
                events.extend(trigger(db, created))
            return created

        return await self._run(_insert)

    async def update(self, table: str, filters: Sequence[Filter], patch: Dict[str, Any]) -> List[Dict[str, Any]]:
        model = _model_for(table)
        _check_writable(table)

        def _update(db: Session, events: List[ChangeEvent]):
            for column in patch:
                _column(model, column)
            self._check_update(model, patch)
            stmt = select(model).where(*_compile_filters(model, filters), *self._policy_clauses(model))
            objs = db.execute(stmt).scalars().all()
            olds = [row_to_dict(obj) for obj in objs]
            for obj in objs:
                for column, value in patch.items():
                    setattr(obj, column, value)
            db.commit()
            updated = []
            for obj, old in zip(objs, olds):
                db.refresh(obj)
                new = row_to_dict(obj)
                updated.append(new)
                events.append(ChangeEvent("UPDATE", table, new_row=new, old_row=old))
            return updated

        return await self._run(_update)

    # ==== plumbing ====
    async def _run(self, fn):
        loop = asyncio.get_running_loop()

        def _in_session():
            # events are only appended after a commit
            events: List[ChangeEvent] = []
            db = self.session_factory()
            try:
                return fn(db, events)
            except SQLAlchemyError as e:
                db.rollback()
                raise StoreError(str(e.__class__.__name__) + ": " + str(e).splitlines()[0]) from e
            finally:
                db.close()
                if events:
                    self._publish_threadsafe(loop, events)

        # the worker thread is not interrupted on timeout; its result is dropped,
        # but whatever it committed still reaches the feed
        future = loop.run_in_executor(None, _in_session)
        try:
            if self.timeout:
                return await asyncio.wait_for(future, self.timeout)
            return await future
        except asyncio.TimeoutError as e:
            logger.warning(f"Store call timed out identity={self.identity_id} timeout={self.timeout}")
            raise StoreError("store call timed out", code="timeout") from e

    def _publish_threadsafe(self, loop: asyncio.AbstractEventLoop, events: List[ChangeEvent]):
        try:
            loop.call_soon_threadsafe(self._publish, events)
        except RuntimeError:
            logger.warning(f"Dropping change events, event loop closed identity={self.identity_id} count={len(events)}")

    def _publish(self, events: List[ChangeEvent]):
        for event in events:
            self.feed.publish(event)


def _check_writable(table: str):
    if table in READ_ONLY_TABLES:
        raise StoreError(f"permission denied for table {table}", code="permission_denied")


def _touch_room_on_message(db: Session, message: Dict[str, Any]) -> List[ChangeEvent]:
    room = db.get(models.ChatRoom, message["room_id"])
    if room is None:
        return []
    old = row_to_dict(room)
    room.updated_at = message["created_at"]
    db.commit()
    db.refresh(room)
    return [ChangeEvent("UPDATE", "chat_rooms", new_row=row_to_dict(room), old_row=old)]


AFTER_INSERT = {
    "chat_messages": _touch_room_on_message,
}
