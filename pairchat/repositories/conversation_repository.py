import logging
from datetime import datetime, timezone
from functools import partial
from typing import Any, Dict, List, Optional, Tuple

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError, PyMongoError

from pairchat.exceptions import ConflictError, CreateFailed, LookupFailed, StoreError
from pairchat.models.conversation import ConversationDocument
from pairchat.repositories.base import (
    as_utc,
    conversation_channel,
    decode_cursor,
    encode_cursor,
    notify,
)
from pairchat.schemas.conversation import Conversation
from pairchat.utils.subscription import Subscription


logger = logging.getLogger(__name__)


class ConversationRepository:
    """MongoDB conversation store. The pairing key is the document ``_id``."""

    def __init__(self, db: AsyncIOMotorDatabase, bus) -> None:
        self._db = db
        self._bus = bus

    @property
    def collection(self):
        return self._db["conversations"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("participants", ASCENDING)])
        await self.collection.create_index([("last_message_at", DESCENDING), ("_id", DESCENDING)])

    async def get_by_key(self, key: str) -> Optional[Conversation]:
        try:
            doc = await self.collection.find_one({"_id": key})
        except PyMongoError as exc:
            raise LookupFailed(f"Could not read conversation {key}") from exc
        return self._to_conversation(doc) if doc else None

    async def create_if_absent(self, key: str, initial: Conversation) -> Conversation:
        if initial.key != key:
            raise CreateFailed(f"Initial record is keyed {initial.key!r}, expected {key!r}")
        now = datetime.now(timezone.utc)
        on_insert: ConversationDocument = {
            "participants": initial.participants,
            "participant_profiles": {
                pid: profile.model_dump() for pid, profile in initial.participant_profiles.items()
            },
            "context_label": initial.context_label,
            "created_at": now,
            "last_message_at": now,
            "last_message_text": None,
        }
        created = False
        try:
            try:
                result = await self.collection.update_one(
                    {"_id": key}, {"$setOnInsert": on_insert}, upsert=True
                )
                created = result.upserted_id is not None
            except DuplicateKeyError:
                # two upserts raced on the same _id; the other one won
                logger.debug("Lost create race for %s, reading winner", key)
            doc = await self.collection.find_one({"_id": key})
        except PyMongoError as exc:
            raise CreateFailed(f"Could not create conversation {key}") from exc
        if doc is None:
            raise CreateFailed(f"Conversation {key} vanished after create")
        if created:
            logger.info("Created conversation %s", key)
            await notify(self._bus, conversation_channel(key), "created")
        return self._to_conversation(doc)

    async def update_summary(self, key: str, last_message_text: str, last_message_at: datetime) -> None:
        try:
            result = await self.collection.update_one(
                {
                    "_id": key,
                    "$or": [
                        {"last_message_at": None},
                        {"last_message_at": {"$lte": last_message_at}},
                    ],
                },
                {"$set": {"last_message_text": last_message_text, "last_message_at": last_message_at}},
            )
        except PyMongoError as exc:
            raise StoreError(f"Summary update for {key} failed") from exc
        if not result.matched_count:
            raise ConflictError(f"Conversation {key} is missing or has a newer summary")
        await notify(self._bus, conversation_channel(key), "summary")

    async def subscribe(self, key: str, on_change, on_error=None) -> Subscription:
        return await Subscription.start(
            self._bus, conversation_channel(key), partial(self.get_by_key, key), on_change, on_error
        )

    async def list_for_participant(
        self, participant_id: str, limit: int = 20, cursor: Optional[str] = None
    ) -> Tuple[List[Conversation], Optional[str]]:
        query: Dict[str, Any] = {"participants": participant_id}
        sort = [("last_message_at", DESCENDING), ("_id", DESCENDING)]
        if cursor:
            # Cursor format: timestamp_ms:key
            ts_ms, key = decode_cursor(cursor)
            ts = datetime.fromtimestamp(ts_ms / 1000.0, tz=timezone.utc)
            query["$or"] = [
                {"last_message_at": {"$lt": ts}},
                {"last_message_at": ts, "_id": {"$lt": key}},
            ]
        try:
            # one extra document tells whether another page exists
            cursor_db = self.collection.find(query).sort(sort).limit(limit + 1)
            docs = await cursor_db.to_list(length=limit + 1)
        except PyMongoError as exc:
            raise LookupFailed(f"Could not list conversations for {participant_id}") from exc
        items = [self._to_conversation(doc) for doc in docs[:limit]]
        next_cursor = None
        if len(docs) > limit:
            last = items[-1]
            next_cursor = encode_cursor(last.last_message_at, last.key)
        return items, next_cursor

    @staticmethod
    def _to_conversation(doc: ConversationDocument) -> Conversation:
        return Conversation(
            key=doc["_id"],
            participants=doc["participants"],
            participant_profiles=doc.get("participant_profiles") or {},
            context_label=doc.get("context_label"),
            created_at=as_utc(doc.get("created_at")),
            last_message_text=doc.get("last_message_text"),
            last_message_at=as_utc(doc.get("last_message_at")),
        )

