import logging
from typing import Optional

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import PyMongoError

from pairchat.exceptions import LookupFailed
from pairchat.models.user import UserDocument
from pairchat.schemas.participant import ParticipantProfile


logger = logging.getLogger(__name__)


class UserRepository:
    """Read-only profile lookup over the ``users`` collection owned by the identity service."""

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._collection = db.get_collection("users")

    async def profile_of(self, user_id: str) -> Optional[ParticipantProfile]:
        try:
            oid = ObjectId(user_id)
        except (InvalidId, TypeError):
            # ids minted outside MongoDB are stored as plain strings
            query = {"_id": user_id}
        else:
            query = {"_id": {"$in": [oid, user_id]}}
        try:
            user: Optional[UserDocument] = await self._collection.find_one(query, {"full_name": 1, "email": 1, "profile_image": 1})
        except PyMongoError as exc:
            raise LookupFailed(f"Could not read profile of {user_id}") from exc
        if not user:
            logger.debug("No profile for %s", user_id)
            return None
        return ParticipantProfile(
            name=user.get("full_name") or user.get("email"),
            avatar_ref=user.get("profile_image"),
        )
