from pydantic import BaseModel
import datetime
from typing import List, Literal, Optional


Role = Literal["student", "recruiter"]


class Identity(BaseModel):
    """The authenticated principal a chat session acts for."""

    id: str
    role: Optional[str] = None


class UserBase(BaseModel):
    username: str
    role: Role
    display_name: Optional[str] = None


class UserCreate(UserBase):
    password: str


class UserOut(UserBase):
    id: str
    created_at: Optional[datetime.datetime] = None

    class Config:
        from_attributes = True


class RegisterIn(UserCreate):
    pass


class Token(BaseModel):
    access_token: str
    token_type: str


class ContactOut(BaseModel):
    id: str
    name: str
    role: Role

    class Config:
        from_attributes = True


class ChatRoom(BaseModel):
    id: str
    student_id: str
    recruiter_id: str
    job_id: Optional[str] = None
    created_at: datetime.datetime
    updated_at: datetime.datetime
    # filled in for the viewing identity; not a stored column
    partner_name: Optional[str] = None

    class Config:
        from_attributes = True


class ChatMessage(BaseModel):
    id: str
    room_id: str
    sender_id: str
    content: str
    created_at: datetime.datetime
    is_read: bool = False

    class Config:
        from_attributes = True


class RoomRequest(BaseModel):
    other_user_id: str
    job_id: Optional[str] = None


class MessageCreate(BaseModel):
    content: str


class MarkReadOut(BaseModel):
    room_id: str
    marked: int


class RoomUnreadOut(BaseModel):
    room_id: str
    unread_count: int


class UnreadCountsOut(BaseModel):
    total: int
    rooms: List[RoomUnreadOut] = []
