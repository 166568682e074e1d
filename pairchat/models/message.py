from datetime import datetime
from typing import Optional, TypedDict

from bson import ObjectId

from pairchat.models.conversation import ProfileDocument


class MessageDocument(TypedDict, total=False):
    _id: ObjectId
    conversation_key: str
    sender_id: str
    sender_profile: ProfileDocument
    content: str
    timestamp: datetime
    # client idempotency token
    client_message_id: Optional[str]
