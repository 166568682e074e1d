from dataclasses import dataclass
from typing import Optional

from pairchat.config import Settings
from pairchat.database.connection import connect_to_mongo, get_database
from pairchat.repositories.base import ConversationStore, MessageLog
from pairchat.repositories.conversation_repository import ConversationRepository
from pairchat.repositories.memory import InMemoryConversationStore, InMemoryMessageLog
from pairchat.repositories.message_repository import MessageRepository
from pairchat.repositories.user_repository import UserRepository
from pairchat.services.identity import ProfileDirectory


@dataclass
class Stores:
    conversations: ConversationStore
    messages: MessageLog
    profiles: Optional[ProfileDirectory] = None
    backend: str = "memory"


async def build_stores(settings: Settings, bus) -> Stores:
    if settings.store_backend == "memory":
        return Stores(InMemoryConversationStore(bus), InMemoryMessageLog(bus))

    await connect_to_mongo()
    db = get_database()
    conversations = ConversationRepository(db, bus)
    messages = MessageRepository(db, bus)
    await conversations.ensure_indexes()
    await messages.ensure_indexes()
    return Stores(conversations, messages, UserRepository(db), backend="mongo")
