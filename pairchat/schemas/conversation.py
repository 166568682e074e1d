from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from pairchat.schemas.participant import ParticipantProfile


class Conversation(BaseModel):

    key: str
    participants: List[str] = Field(min_length=2, max_length=2)
    participant_profiles: Dict[str, ParticipantProfile] = Field(default_factory=dict)
    context_label: Optional[str] = None
    created_at: Optional[datetime] = None
    last_message_text: Optional[str] = None
    last_message_at: Optional[datetime] = None

    @field_validator("participants")
    @classmethod
    def _two_sorted_distinct(cls, value: List[str]) -> List[str]:
        if len(set(value)) != 2:
            raise ValueError("A conversation needs two distinct participants")
        return sorted(value)

    def other_participant(self, participant_id: str) -> str:
        first, second = self.participants
        return second if participant_id == first else first


class ConversationPage(BaseModel):

    items: List[Conversation]
    next_cursor: Optional[str] = None
