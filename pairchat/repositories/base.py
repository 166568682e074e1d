"""Store contracts the conversation core depends on.

Any document store plus ordered log with change notification can back the
core as long as it honours these operations. Implementations: MongoDB
(``conversation_repository``, ``message_repository``) and in-memory (``memory``).
"""
import logging
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional, Protocol, Tuple

from pairchat.schemas.conversation import Conversation
from pairchat.schemas.message import Message
from pairchat.schemas.participant import ParticipantProfile
from pairchat.utils.subscription import Subscription


logger = logging.getLogger(__name__)


def conversation_channel(key: str) -> str:
    return f"conversation:{key}"


def messages_channel(key: str) -> str:
    return f"messages:{key}"


async def notify(bus, channel: str, message: str) -> None:
    """Publish a change notice after a committed write. Failures are logged, not raised."""
    try:
        await bus.publish(channel, message)
    except Exception:
        # subscribers re-read on the next notice; the write itself stands
        logger.exception("Could not publish %r on %s", message, channel)


def encode_cursor(at: datetime, ident: str) -> str:
    # cursor format: ts_ms:id
    return f"{int(at.timestamp() * 1000)}:{ident}"


def decode_cursor(cursor: str) -> Tuple[int, str]:
    ts_str, ident = cursor.split(":", 1)
    return int(ts_str), ident


class ConversationStore(Protocol):

    async def get_by_key(self, key: str) -> Optional[Conversation]:
        """Raises LookupFailed on store errors."""

    async def create_if_absent(self, key: str, initial: Conversation) -> Conversation:
        """Atomic. Losers of a concurrent create get the winner's record."""

    async def update_summary(self, key: str, last_message_text: str, last_message_at: datetime) -> None:
        """Raises ConflictError when a newer summary is already stored."""

    async def subscribe(
        self,
        key: str,
        on_change: Callable[[Optional[Conversation]], Any],
        on_error: Optional[Callable[[Exception], Any]] = None,
    ) -> Subscription:
        ...

    async def list_for_participant(
        self, participant_id: str, limit: int = 20, cursor: Optional[str] = None
    ) -> Tuple[List[Conversation], Optional[str]]:
        ...


class MessageLog(Protocol):

    async def append(
        self,
        conversation_key: str,
        sender_id: str,
        sender_profile: ParticipantProfile,
        text: str,
        client_message_id: Optional[str] = None,
    ) -> Message:
        """Raises AppendFailed on store errors."""

    async def list_range(self, conversation_key: str) -> List[Message]:
        """Whole conversation, ascending by (created_at, id)."""

    async def subscribe(
        self,
        conversation_key: str,
        on_change: Callable[[List[Message]], Any],
        on_error: Optional[Callable[[Exception], Any]] = None,
    ) -> Subscription:
        ...

    async def page(
        self, conversation_key: str, limit: int = 50, cursor: Optional[str] = None
    ) -> Tuple[List[Message], Optional[str]]:
        ...


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # motor returns naive datetimes unless the client is tz_aware
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
