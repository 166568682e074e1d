from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ParticipantProfile(BaseModel):

    model_config = ConfigDict(frozen=True)

    name: Optional[str] = None
    avatar_ref: Optional[str] = None

    def is_blank(self) -> bool:
        return not self.name and not self.avatar_ref


class Participant(BaseModel):
    """An identity as seen by the chat core, with display attributes captured at the point of use."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    profile: ParticipantProfile = ParticipantProfile()
