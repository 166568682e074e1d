import logging
from datetime import datetime, timezone
from functools import partial
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING
from pymongo.errors import DuplicateKeyError, PyMongoError

from pairchat.exceptions import AppendFailed, LookupFailed
from pairchat.models.message import MessageDocument
from pairchat.repositories.base import (
    as_utc,
    decode_cursor,
    encode_cursor,
    messages_channel,
    notify,
)
from pairchat.schemas.message import Message
from pairchat.schemas.participant import ParticipantProfile
from pairchat.utils.subscription import Subscription


logger = logging.getLogger(__name__)


class MessageRepository:

    def __init__(self, db: AsyncIOMotorDatabase, bus) -> None:
        self._db = db
        self._bus = bus

    @property
    def collection(self):
        return self._db["messages"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("conversation_key", ASCENDING), ("timestamp", ASCENDING), ("_id", ASCENDING)])
        await self.collection.create_index(
            [("conversation_key", ASCENDING), ("client_message_id", ASCENDING)],
            unique=True,
            partialFilterExpression={"client_message_id": {"$type": "string"}},
        )

    async def append(
        self,
        conversation_key: str,
        sender_id: str,
        sender_profile: ParticipantProfile,
        text: str,
        client_message_id: Optional[str] = None,
    ) -> Message:
        doc: MessageDocument = {
            "_id": ObjectId(),
            "conversation_key": conversation_key,
            "sender_id": sender_id,
            "sender_profile": sender_profile.model_dump(),
            "content": text,
            # millisecond precision, same as what MongoDB keeps
            "timestamp": _truncate_ms(datetime.now(timezone.utc)),
            "client_message_id": client_message_id,
        }
        try:
            await self.collection.insert_one(doc)
        except DuplicateKeyError:
            if not client_message_id:
                raise AppendFailed(f"Duplicate message id in {conversation_key}")
            existing = await self._find_by_client_id(conversation_key, client_message_id)
            if existing is None:
                raise AppendFailed(f"Duplicate client_message_id {client_message_id} but no stored message")
            logger.info("Ignoring resend of %s in %s", client_message_id, conversation_key)
            return existing
        except PyMongoError as exc:
            raise AppendFailed(f"Could not append to {conversation_key}") from exc
        await notify(self._bus, messages_channel(conversation_key), str(doc["_id"]))
        return self._to_message(doc)

    async def _find_by_client_id(self, conversation_key: str, client_message_id: str) -> Optional[Message]:
        try:
            doc = await self.collection.find_one(
                {"conversation_key": conversation_key, "client_message_id": client_message_id}
            )
        except PyMongoError as exc:
            raise AppendFailed(f"Could not read back {client_message_id}") from exc
        return self._to_message(doc) if doc else None

    async def list_range(self, conversation_key: str) -> List[Message]:
        try:
            cur = self.collection.find({"conversation_key": conversation_key}).sort(
                [("timestamp", 1), ("_id", 1)]
            )
            docs = await cur.to_list(length=None)
        except PyMongoError as exc:
            raise LookupFailed(f"Could not read messages of {conversation_key}") from exc
        return [self._to_message(doc) for doc in docs]

    async def subscribe(self, conversation_key: str, on_change, on_error=None) -> Subscription:
        return await Subscription.start(
            self._bus,
            messages_channel(conversation_key),
            partial(self.list_range, conversation_key),
            on_change,
            on_error,
        )

    async def page(
        self,
        conversation_key: str,
        limit: int = 50,
        cursor: Optional[str] = None,
    ) -> Tuple[List[Message], Optional[str]]:
        query: Dict[str, Any] = {"conversation_key": conversation_key}
        sort = [("timestamp", -1), ("_id", -1)]
        if cursor:
            # cursor format: ts_ms:oid
            ts_ms, oid_hex = decode_cursor(cursor)
            try:
                oid = ObjectId(oid_hex)
            except InvalidId as exc:
                raise ValueError(f"Malformed cursor {cursor!r}") from exc
            ts = datetime.fromtimestamp(ts_ms / 1000.0, tz=timezone.utc)
            query["$or"] = [
                {"timestamp": {"$lt": ts}},
                {"timestamp": ts, "_id": {"$lt": oid}},
            ]
        try:
            cur = self.collection.find(query).sort(sort).limit(limit + 1)
            docs = await cur.to_list(length=limit + 1)
        except PyMongoError as exc:
            raise LookupFailed(f"Could not page messages of {conversation_key}") from exc
        items = [self._to_message(doc) for doc in docs[:limit]]
        next_cursor = None
        if len(docs) > limit:
            last = items[-1]
            next_cursor = encode_cursor(last.created_at, last.id)
        # return ascending chronological order for UI
        return list(reversed(items)), next_cursor

    @staticmethod
    def _to_message(doc: MessageDocument) -> Message:
        return Message(
            id=str(doc["_id"]),
            conversation_key=doc["conversation_key"],
            sender_id=doc["sender_id"],
            sender_profile=doc.get("sender_profile") or {},
            text=doc["content"],
            created_at=as_utc(doc["timestamp"]),
            client_message_id=doc.get("client_message_id"),
        )


def _truncate_ms(value: datetime) -> datetime:
    return value.replace(microsecond=value.microsecond // 1000 * 1000)
