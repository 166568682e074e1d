from datetime import datetime
from typing import Dict, List, Optional, TypedDict


class ProfileDocument(TypedDict, total=False):
    name: Optional[str]
    avatar_ref: Optional[str]


class ConversationDocument(TypedDict, total=False):
    # _id is the canonical pairing key
    _id: str
    participants: List[str]
    participant_profiles: Dict[str, ProfileDocument]
    context_label: Optional[str]
    created_at: datetime
    last_message_at: Optional[datetime]
    last_message_text: Optional[str]
