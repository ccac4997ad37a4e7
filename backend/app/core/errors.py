from typing import Optional


class ChatError(Exception):
    """Base class for errors raised by the chat core."""

    code = "chat_error"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_dict(self):
        return {"code": self.code, "message": self.message}


class InvalidOperation(ChatError):
    """Caller-side precondition violation, rejected before any store access."""

    code = "invalid_operation"


class StoreError(ChatError):
    """Failure reported by the row store (network, permission, constraint, timeout)."""

    code = "store_failure"


class SubscriptionError(ChatError):
    """A change-feed subscription could not be established or was lost."""

    code = "subscription_failure"
