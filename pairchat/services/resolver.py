import asyncio
import logging
from enum import Enum
from typing import Any, Callable, List, Optional

from pairchat.core.pairing import derive_key
from pairchat.exceptions import LookupFailed, NotResolved
from pairchat.repositories.base import ConversationStore, MessageLog
from pairchat.schemas.conversation import Conversation
from pairchat.schemas.participant import Participant
from pairchat.services.projection import MessageProjection, MessageView
from pairchat.utils.subscription import Subscription


logger = logging.getLogger(__name__)


class ResolverState(str, Enum):
    UNRESOLVED = "unresolved"
    RESOLVING = "resolving"
    RESOLVED = "resolved"
    FAILED = "failed"


class ConversationHandle:
    """
    Reference to the conversation between ``local`` and ``remote``.

    A handle is virtual while ``conversation`` is None: the key is known but no
    record has been stored yet. It becomes persistent once the first send creates
    the record or a conversation subscription observes it.
    """

    def __init__(
        self,
        key: str,
        local: Participant,
        remote: Participant,
        context_label: Optional[str] = None,
        conversation: Optional[Conversation] = None,
    ) -> None:
        self.key = key
        self.local = local
        self.remote = remote
        self.context_label = context_label
        self.conversation = conversation

    @property
    def is_virtual(self) -> bool:
        return self.conversation is None

    def participant(self, participant_id: str) -> Optional[Participant]:
        for p in (self.local, self.remote):
            if p.id == participant_id:
                return p
        return None

    def attach(self, conversation: Conversation) -> None:
        if conversation.key != self.key:
            raise ValueError(f"Conversation {conversation.key} does not belong to handle {self.key}")
        self.conversation = conversation

    def __repr__(self) -> str:
        kind = "virtual" if self.is_virtual else "persisted"
        return f"<ConversationHandle {self.key} ({kind})>"


class ConversationResolver:
    """
    Turns a (local, remote) pair into a live conversation handle.

    One resolver backs one observer, e.g. a chat screen or a socket. Resolving
    never writes to the store. Subscriptions started through the resolver belong
    to the current pair and are cancelled when another pair is resolved or the
    resolver is closed.
    """

    def __init__(self, store: ConversationStore, messages: MessageLog) -> None:
        self._store = store
        self._projection = MessageProjection(messages)
        self.state = ResolverState.UNRESOLVED
        self.last_error: Optional[Exception] = None
        self._handle: Optional[ConversationHandle] = None
        self._subscriptions: List[Subscription] = []
        self._generation = 0

    @property
    def handle(self) -> ConversationHandle:
        if self.state is not ResolverState.RESOLVED or self._handle is None:
            raise NotResolved(f"Conversation is {self.state.value}")
        return self._handle

    async def resolve(
        self,
        local: Participant,
        remote: Participant,
        context_label: Optional[str] = None,
    ) -> ConversationHandle:
        key = derive_key(local.id, remote.id)
        # retire the previous pair before the first await
        self._generation += 1
        generation = self._generation
        self._handle = None
        self.last_error = None
        self.state = ResolverState.RESOLVING
        try:
            await self._release()
            conversation = await self._store.get_by_key(key)
        except LookupFailed as exc:
            if generation == self._generation:
                self.state = ResolverState.FAILED
                self.last_error = exc
            logger.warning("Resolving %s failed: %s", key, exc)
            raise
        except asyncio.CancelledError:
            if generation == self._generation:
                self.state = ResolverState.UNRESOLVED
            raise
        handle = ConversationHandle(key, local, remote, context_label, conversation)
        if generation != self._generation:
            # a newer resolve owns the resolver now
            return handle
        self._handle = handle
        self.state = ResolverState.RESOLVED
        logger.debug("Resolved %r", handle)
        return handle

    async def subscribe_messages(
        self,
        on_batch: Callable[[MessageView], Any],
        on_error: Optional[Callable[[Exception], Any]] = None,
    ) -> Subscription:
        handle = self.handle
        sub = await self._projection.subscribe_messages(handle.key, on_batch, on_error)
        return await self._track(handle, sub)

    async def subscribe_conversation(
        self,
        on_change: Optional[Callable[[Optional[Conversation]], Any]] = None,
        on_error: Optional[Callable[[Exception], Any]] = None,
    ) -> Subscription:
        handle = self.handle

        def _on_change(conversation: Optional[Conversation]):
            if conversation is not None:
                handle.attach(conversation)
            if on_change is not None:
                return on_change(conversation)

        sub = await self._store.subscribe(handle.key, _on_change, on_error)
        return await self._track(handle, sub)

    async def _track(self, handle: ConversationHandle, sub: Subscription) -> Subscription:
        if handle is not self._handle:
            # re-resolved while the subscription was being set up
            await sub.cancel()
            raise NotResolved(f"Conversation {handle.key} is no longer current")
        self._subscriptions.append(sub)
        return sub

    async def _release(self) -> None:
        subs, self._subscriptions = self._subscriptions, []
        for sub in subs:
            await sub.cancel()

    async def close(self) -> None:
        self._generation += 1
        self._handle = None
        self.state = ResolverState.UNRESOLVED
        await self._release()

    async def __aenter__(self) -> "ConversationResolver":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
