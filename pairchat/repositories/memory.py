"""In-memory conversation store and message log.

Single-process stand-ins for the MongoDB repositories, with the same atomicity
guarantees under one event loop: no await sits between a check and the write it
guards. Used by the test-suite and by ``STORE_BACKEND=memory``.
"""
import asyncio
import itertools
from datetime import datetime, timezone
from functools import partial
from typing import Callable, Dict, List, Optional, Tuple

from pairchat.exceptions import ConflictError, CreateFailed
from pairchat.repositories.base import (
    conversation_channel,
    decode_cursor,
    encode_cursor,
    messages_channel,
    notify,
)
from pairchat.schemas.conversation import Conversation
from pairchat.schemas.message import Message
from pairchat.schemas.participant import ParticipantProfile
from pairchat.utils.realtime_bus import LocalBus
from pairchat.utils.subscription import Subscription


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ms(at: datetime) -> int:
    return int(at.timestamp() * 1000)


class InMemoryConversationStore:

    def __init__(self, bus=None, clock: Callable[[], datetime] = _utcnow) -> None:
        self._bus = bus or LocalBus()
        self._clock = clock
        self._docs: Dict[str, Conversation] = {}

    async def get_by_key(self, key: str) -> Optional[Conversation]:
        await asyncio.sleep(0)
        doc = self._docs.get(key)
        return doc.model_copy(deep=True) if doc else None

    async def create_if_absent(self, key: str, initial: Conversation) -> Conversation:
        if initial.key != key:
            raise CreateFailed(f"Initial record is keyed {initial.key!r}, expected {key!r}")
        await asyncio.sleep(0)
        existing = self._docs.get(key)
        if existing is not None:
            return existing.model_copy(deep=True)
        now = self._clock()
        record = initial.model_copy(
            update={"created_at": now, "last_message_at": now, "last_message_text": None},
            deep=True,
        )
        self._docs[key] = record
        await notify(self._bus, conversation_channel(key), "created")
        return record.model_copy(deep=True)

    async def update_summary(self, key: str, last_message_text: str, last_message_at: datetime) -> None:
        await asyncio.sleep(0)
        current = self._docs.get(key)
        if current is None:
            raise ConflictError(f"Conversation {key} does not exist")
        if current.last_message_at is not None and current.last_message_at > last_message_at:
            raise ConflictError(f"Conversation {key} already has a newer summary")
        self._docs[key] = current.model_copy(
            update={"last_message_text": last_message_text, "last_message_at": last_message_at}
        )
        await notify(self._bus, conversation_channel(key), "summary")

    async def subscribe(self, key: str, on_change, on_error=None) -> Subscription:
        return await Subscription.start(
            self._bus, conversation_channel(key), partial(self.get_by_key, key), on_change, on_error
        )

    async def list_for_participant(
        self, participant_id: str, limit: int = 20, cursor: Optional[str] = None
    ) -> Tuple[List[Conversation], Optional[str]]:
        await asyncio.sleep(0)
        items = [c for c in self._docs.values() if participant_id in c.participants]
        items.sort(key=lambda c: (_ms(c.last_message_at), c.key), reverse=True)
        if cursor:
            ts, key = decode_cursor(cursor)
            items = [c for c in items if (_ms(c.last_message_at), c.key) < (ts, key)]
        has_more = len(items) > limit
        items = [c.model_copy(deep=True) for c in items[:limit]]
        next_cursor = encode_cursor(items[-1].last_message_at, items[-1].key) if has_more else None
        return items, next_cursor


class InMemoryMessageLog:

    def __init__(self, bus=None, clock: Callable[[], datetime] = _utcnow) -> None:
        self._bus = bus or LocalBus()
        self._clock = clock
        self._seq = itertools.count(1)
        self._messages: Dict[str, List[Message]] = {}
        self._by_client_id: Dict[Tuple[str, str], Message] = {}

    async def append(
        self,
        conversation_key: str,
        sender_id: str,
        sender_profile: ParticipantProfile,
        text: str,
        client_message_id: Optional[str] = None,
    ) -> Message:
        await asyncio.sleep(0)
        if client_message_id:
            existing = self._by_client_id.get((conversation_key, client_message_id))
            if existing is not None:
                return existing
        message = Message(
            id=f"{next(self._seq):012d}",
            conversation_key=conversation_key,
            sender_id=sender_id,
            sender_profile=sender_profile,
            text=text,
            created_at=self._clock(),
            client_message_id=client_message_id,
        )
        self._messages.setdefault(conversation_key, []).append(message)
        if client_message_id:
            self._by_client_id[(conversation_key, client_message_id)] = message
        await notify(self._bus, messages_channel(conversation_key), message.id)
        return message

    async def list_range(self, conversation_key: str) -> List[Message]:
        await asyncio.sleep(0)
        return sorted(self._messages.get(conversation_key, []), key=lambda m: m.sort_key)

    async def subscribe(self, conversation_key: str, on_change, on_error=None) -> Subscription:
        return await Subscription.start(
            self._bus,
            messages_channel(conversation_key),
            partial(self.list_range, conversation_key),
            on_change,
            on_error,
        )

    async def page(
        self, conversation_key: str, limit: int = 50, cursor: Optional[str] = None
    ) -> Tuple[List[Message], Optional[str]]:
        items = await self.list_range(conversation_key)
        items.reverse()
        if cursor:
            ts, ident = decode_cursor(cursor)
            items = [m for m in items if (_ms(m.created_at), m.id) < (ts, ident)]
        has_more = len(items) > limit
        items = items[:limit]
        next_cursor = encode_cursor(items[-1].created_at, items[-1].id) if has_more else None
        # ascending chronological order inside a page
        return list(reversed(items)), next_cursor
