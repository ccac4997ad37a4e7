import datetime
import uuid
from sqlalchemy import Column, String, DateTime, ForeignKey, Index
from ..database import Base


def _utcnow():
    return datetime.datetime.now(datetime.timezone.utc)


class ChatRoom(Base):
    __tablename__ = "chat_rooms"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    student_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    recruiter_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    # Opaque reference into the job board; jobs are not stored here.
    job_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_chat_rooms_pair", "student_id", "recruiter_id"),
    )
