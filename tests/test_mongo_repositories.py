from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from bson import ObjectId
from pymongo.errors import DuplicateKeyError, ServerSelectionTimeoutError
from redis.exceptions import ConnectionError as RedisConnectionError

from pairchat.exceptions import AppendFailed, ConflictError, CreateFailed, LookupFailed
from pairchat.repositories.conversation_repository import ConversationRepository
from pairchat.repositories.message_repository import MessageRepository
from pairchat.repositories.user_repository import UserRepository
from pairchat.schemas.conversation import Conversation
from pairchat.schemas.participant import ParticipantProfile


KEY = "dm:u1|u2"
NOW = datetime(2026, 5, 1, 9, 30, tzinfo=timezone.utc)


def _db_with(collection):
    db = MagicMock()
    db.__getitem__.return_value = collection
    db.get_collection.return_value = collection
    return db


@pytest.fixture
def collection():
    return MagicMock()


@pytest.fixture
def bus():
    bus = MagicMock()
    bus.publish = AsyncMock()
    return bus


def _conversation_doc(**overrides):
    doc = {
        "_id": KEY,
        "participants": ["u1", "u2"],
        "participant_profiles": {"u1": {"name": "Alice", "avatar_ref": None}, "u2": {"name": "Bob", "avatar_ref": None}},
        "context_label": None,
        # naive, as returned by a client without tz_aware
        "created_at": NOW.replace(tzinfo=None),
        "last_message_at": NOW.replace(tzinfo=None),
        "last_message_text": None,
    }
    doc.update(overrides)
    return doc


def _initial():
    return Conversation(
        key=KEY,
        participants=["u1", "u2"],
        participant_profiles={"u1": ParticipantProfile(name="Alice"), "u2": ParticipantProfile(name="Bob")},
    )


async def test_get_by_key_maps_document(collection, bus):
    collection.find_one = AsyncMock(return_value=_conversation_doc())
    repo = ConversationRepository(_db_with(collection), bus)
    conversation = await repo.get_by_key(KEY)
    assert conversation.key == KEY
    assert conversation.created_at == NOW
    assert conversation.participant_profiles["u2"].name == "Bob"
    collection.find_one.assert_awaited_once_with({"_id": KEY})


async def test_get_by_key_wraps_driver_errors(collection, bus):
    collection.find_one = AsyncMock(side_effect=ServerSelectionTimeoutError("no primary"))
    repo = ConversationRepository(_db_with(collection), bus)
    with pytest.raises(LookupFailed):
        await repo.get_by_key(KEY)


async def test_create_if_absent_upserts_and_announces(collection, bus):
    collection.update_one = AsyncMock(return_value=MagicMock(upserted_id=KEY))
    collection.find_one = AsyncMock(return_value=_conversation_doc())
    repo = ConversationRepository(_db_with(collection), bus)

    conversation = await repo.create_if_absent(KEY, _initial())

    assert conversation.key == KEY
    filter_, update = collection.update_one.await_args.args
    assert filter_ == {"_id": KEY}
    assert set(update) == {"$setOnInsert"}
    assert update["$setOnInsert"]["participants"] == ["u1", "u2"]
    assert collection.update_one.await_args.kwargs == {"upsert": True}
    bus.publish.assert_awaited_once_with("conversation:" + KEY, "created")


async def test_create_if_absent_on_existing_record_is_silent(collection, bus):
    collection.update_one = AsyncMock(return_value=MagicMock(upserted_id=None))
    collection.find_one = AsyncMock(return_value=_conversation_doc(last_message_text="earlier"))
    repo = ConversationRepository(_db_with(collection), bus)
    conversation = await repo.create_if_absent(KEY, _initial())
    assert conversation.last_message_text == "earlier"
    bus.publish.assert_not_awaited()


async def test_create_race_loser_reads_the_winner(collection, bus):
    collection.update_one = AsyncMock(side_effect=DuplicateKeyError("E11000"))
    collection.find_one = AsyncMock(return_value=_conversation_doc())
    repo = ConversationRepository(_db_with(collection), bus)
    conversation = await repo.create_if_absent(KEY, _initial())
    assert conversation.key == KEY
    bus.publish.assert_not_awaited()


async def test_create_failure_is_reported(collection, bus):
    collection.update_one = AsyncMock(side_effect=ServerSelectionTimeoutError("no primary"))
    repo = ConversationRepository(_db_with(collection), bus)
    with pytest.raises(CreateFailed):
        await repo.create_if_absent(KEY, _initial())


async def test_stale_summary_update_conflicts(collection, bus):
    collection.update_one = AsyncMock(return_value=MagicMock(matched_count=0))
    repo = ConversationRepository(_db_with(collection), bus)
    with pytest.raises(ConflictError):
        await repo.update_summary(KEY, "hi", NOW)
    bus.publish.assert_not_awaited()


async def test_summary_update_guards_on_timestamp(collection, bus):
    collection.update_one = AsyncMock(return_value=MagicMock(matched_count=1))
    repo = ConversationRepository(_db_with(collection), bus)
    await repo.update_summary(KEY, "hi", NOW)
    filter_, update = collection.update_one.await_args.args
    assert {"last_message_at": {"$lte": NOW}} in filter_["$or"]
    assert update == {"$set": {"last_message_text": "hi", "last_message_at": NOW}}
    bus.publish.assert_awaited_once_with("conversation:" + KEY, "summary")


def _message_doc(text="hi", client_message_id=None):
    return {
        "_id": ObjectId(),
        "conversation_key": KEY,
        "sender_id": "u1",
        "sender_profile": {"name": "Alice", "avatar_ref": None},
        "content": text,
        "timestamp": NOW,
        "client_message_id": client_message_id,
    }


async def test_append_inserts_and_announces(collection, bus):
    collection.insert_one = AsyncMock()
    repo = MessageRepository(_db_with(collection), bus)
    message = await repo.append(KEY, "u1", ParticipantProfile(name="Alice"), "hi")
    [doc] = collection.insert_one.await_args.args
    assert doc["content"] == "hi"
    assert doc["timestamp"].microsecond % 1000 == 0
    assert message.id == str(doc["_id"])
    assert message.sender_profile.name == "Alice"
    bus.publish.assert_awaited_once_with("messages:" + KEY, message.id)


async def test_append_with_known_client_token_returns_original(collection, bus):
    original = _message_doc(client_message_id="c-1")
    collection.insert_one = AsyncMock(side_effect=DuplicateKeyError("E11000"))
    collection.find_one = AsyncMock(return_value=original)
    repo = MessageRepository(_db_with(collection), bus)
    message = await repo.append(KEY, "u1", ParticipantProfile(), "hi", client_message_id="c-1")
    assert message.id == str(original["_id"])
    bus.publish.assert_not_awaited()


async def test_append_failure_is_reported(collection, bus):
    collection.insert_one = AsyncMock(side_effect=ServerSelectionTimeoutError("no primary"))
    repo = MessageRepository(_db_with(collection), bus)
    with pytest.raises(AppendFailed):
        await repo.append(KEY, "u1", ParticipantProfile(), "hi")


async def test_last_page_is_ascending_without_cursor(collection, bus):
    newest, older = _message_doc("second"), _message_doc("first")
    cursor = MagicMock()
    cursor.sort.return_value = cursor
    cursor.limit.return_value = cursor
    cursor.to_list = AsyncMock(return_value=[newest, older])
    collection.find = MagicMock(return_value=cursor)
    repo = MessageRepository(_db_with(collection), bus)

    items, next_cursor = await repo.page(KEY, limit=2)

    assert [m.text for m in items] == ["first", "second"]
    assert next_cursor is None
    cursor.sort.assert_called_once_with([("timestamp", -1), ("_id", -1)])
    cursor.limit.assert_called_once_with(3)


async def test_page_hands_out_cursor_when_more_remain(collection, bus):
    newest, older = _message_doc("second"), _message_doc("first")
    cursor = MagicMock()
    cursor.sort.return_value = cursor
    cursor.limit.return_value = cursor
    cursor.to_list = AsyncMock(return_value=[newest, older])
    collection.find = MagicMock(return_value=cursor)
    repo = MessageRepository(_db_with(collection), bus)

    items, next_cursor = await repo.page(KEY, limit=1)

    assert [m.text for m in items] == ["second"]
    assert next_cursor == f"{int(NOW.timestamp() * 1000)}:{newest['_id']}"


async def test_page_rejects_malformed_cursor(collection, bus):
    repo = MessageRepository(_db_with(collection), bus)
    with pytest.raises(ValueError):
        await repo.page(KEY, cursor="123:not-an-object-id")


async def test_profile_lookup_reads_users(collection):
    collection.find_one = AsyncMock(return_value={"_id": "u1", "full_name": "Alice", "profile_image": "a.png"})
    repo = UserRepository(_db_with(collection))
    profile = await repo.profile_of("u1")
    assert profile == ParticipantProfile(name="Alice", avatar_ref="a.png")


async def test_profile_lookup_of_unknown_user(collection):
    collection.find_one = AsyncMock(return_value=None)
    repo = UserRepository(_db_with(collection))
    assert await repo.profile_of(str(ObjectId())) is None


async def test_committed_append_stands_when_publish_fails(collection, bus):
    collection.insert_one = AsyncMock()
    bus.publish = AsyncMock(side_effect=RedisConnectionError("redis is down"))
    repo = MessageRepository(_db_with(collection), bus)
    message = await repo.append(KEY, "u1", ParticipantProfile(), "hi")
    assert message.text == "hi"
    collection.insert_one.assert_awaited_once()


async def test_committed_summary_stands_when_publish_fails(collection, bus):
    collection.update_one = AsyncMock(return_value=MagicMock(matched_count=1))
    bus.publish = AsyncMock(side_effect=RedisConnectionError("redis is down"))
    repo = ConversationRepository(_db_with(collection), bus)
    await repo.update_summary(KEY, "hi", NOW)
    bus.publish.assert_awaited_once()
