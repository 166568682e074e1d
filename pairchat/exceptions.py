from typing import Optional


class ChatError(Exception):
    """Base class for every error raised by the conversation core."""


class InvalidPairing(ChatError, ValueError):
    """Two ids that cannot form a one-to-one conversation."""


class MessageValidationError(ChatError, ValueError):
    pass


class NotResolved(ChatError):
    pass


class NotAuthenticated(ChatError):
    pass


class StoreError(ChatError):
    """Transient failure of the durable store. Callers decide when to retry."""

    retryable = True


class LookupFailed(StoreError):
    pass


class CreateFailed(StoreError):
    pass


class AppendFailed(StoreError):
    pass


class ConflictError(ChatError):
    """A conversation summary update lost to a newer one (or had no target)."""


class SendFailed(ChatError):

    def __init__(self, message: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.cause = cause


class AccessDenied(ChatError):
    pass
