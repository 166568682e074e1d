from typing import Dict, Optional, Protocol

from pairchat.schemas.participant import Participant, ParticipantProfile


class CurrentIdentity(Protocol):

    def current(self) -> Optional[Participant]:
        ...


class ProfileDirectory(Protocol):

    async def profile_of(self, participant_id: str) -> Optional[ParticipantProfile]:
        ...


class StaticIdentity:
    """Identity fixed at construction, e.g. resolved once per request or socket."""

    def __init__(self, participant: Optional[Participant]) -> None:
        self._participant = participant

    def current(self) -> Optional[Participant]:
        return self._participant


class InMemoryProfileDirectory:

    def __init__(self, profiles: Optional[Dict[str, ParticipantProfile]] = None) -> None:
        self._profiles = dict(profiles or {})

    def put(self, participant_id: str, profile: ParticipantProfile) -> None:
        self._profiles[participant_id] = profile

    async def profile_of(self, participant_id: str) -> Optional[ParticipantProfile]:
        return self._profiles.get(participant_id)
