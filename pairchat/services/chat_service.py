from typing import Any, Callable, Optional

from pairchat.core.pairing import split_key
from pairchat.exceptions import AccessDenied, NotAuthenticated
from pairchat.repositories.base import ConversationStore, MessageLog
from pairchat.schemas.conversation import ConversationPage
from pairchat.schemas.message import Message, MessagePage
from pairchat.schemas.participant import Participant
from pairchat.services.delivery import DeliveryPipeline
from pairchat.services.identity import CurrentIdentity, ProfileDirectory
from pairchat.services.projection import MessageProjection, MessageView
from pairchat.services.resolver import ConversationHandle, ConversationResolver
from pairchat.utils.subscription import Subscription


class ChatService:

    def __init__(
        self,
        conversation_repo: ConversationStore,
        message_repo: MessageLog,
        identity: CurrentIdentity,
        profiles: Optional[ProfileDirectory] = None,
    ) -> None:
        self._conversation_repo = conversation_repo
        self._message_repo = message_repo
        self._identity = identity
        self._delivery = DeliveryPipeline(conversation_repo, message_repo, profiles)
        self._projection = MessageProjection(message_repo)

    def current_participant(self) -> Participant:
        me = self._identity.current()
        if me is None:
            raise NotAuthenticated("No current identity")
        return me

    def new_session(self) -> ConversationResolver:
        return ConversationResolver(self._conversation_repo, self._message_repo)

    async def resolve_conversation(
        self, local: Participant, remote: Participant, context_label: Optional[str] = None
    ) -> ConversationHandle:
        return await self.new_session().resolve(local, remote, context_label)

    async def open_session(self, remote: Participant, context_label: Optional[str] = None) -> ConversationResolver:
        """Resolver for the current identity and ``remote``; the caller must close it."""
        me = self.current_participant()
        session = self.new_session()
        await session.resolve(me, remote, context_label)
        return session

    async def send(self, handle: ConversationHandle, text: str, client_message_id: Optional[str] = None) -> Message:
        return await self._delivery.send(handle, self.current_participant(), text, client_message_id)

    async def subscribe_messages(
        self,
        handle: ConversationHandle,
        on_batch: Callable[[MessageView], Any],
        on_error: Optional[Callable[[Exception], Any]] = None,
    ) -> Subscription:
        return await self._projection.subscribe_messages(handle.key, on_batch, on_error)

    async def list_conversations(self, limit: int = 20, cursor: Optional[str] = None) -> ConversationPage:
        me = self.current_participant()
        items, next_cursor = await self._conversation_repo.list_for_participant(me.id, limit=limit, cursor=cursor)
        return ConversationPage(items=items, next_cursor=next_cursor)

    async def get_history(self, conversation_key: str, limit: int = 50, cursor: Optional[str] = None) -> MessagePage:
        me = self.current_participant()
        if me.id not in split_key(conversation_key):
            raise AccessDenied(f"{me.id} is not a participant of {conversation_key}")
        items, next_cursor = await self._message_repo.page(conversation_key, limit=limit, cursor=cursor)
        return MessagePage(items=items, next_cursor=next_cursor)
