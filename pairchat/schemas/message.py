from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from pairchat.schemas.participant import ParticipantProfile


class Message(BaseModel):

    model_config = ConfigDict(frozen=True)

    id: str
    conversation_key: str
    sender_id: str
    sender_profile: ParticipantProfile = ParticipantProfile()
    text: str = Field(min_length=1)
    created_at: datetime
    client_message_id: Optional[str] = None

    @property
    def sort_key(self):
        return (self.created_at, self.id)


class MessagePage(BaseModel):

    items: List[Message]
    next_cursor: Optional[str] = None
