from ..database import Base
from .user import User
from .chat_room import ChatRoom
from .chat_message import ChatMessage

__all__ = [
    "Base",
    "User",
    "ChatRoom",
    "ChatMessage",
]
