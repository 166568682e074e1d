import logging
from typing import Dict, Optional

from pairchat.exceptions import (
    ConflictError,
    MessageValidationError,
    NotResolved,
    SendFailed,
    StoreError,
)
from pairchat.repositories.base import ConversationStore, MessageLog
from pairchat.schemas.conversation import Conversation
from pairchat.schemas.message import Message
from pairchat.schemas.participant import Participant, ParticipantProfile
from pairchat.services.identity import ProfileDirectory
from pairchat.services.resolver import ConversationHandle


logger = logging.getLogger(__name__)


class DeliveryPipeline:
    """create-if-absent -> append message -> update summary, once per send."""

    def __init__(
        self,
        store: ConversationStore,
        messages: MessageLog,
        profiles: Optional[ProfileDirectory] = None,
    ) -> None:
        self._store = store
        self._messages = messages
        self._profiles = profiles

    async def send(
        self,
        handle: Optional[ConversationHandle],
        sender: Participant,
        text: str,
        client_message_id: Optional[str] = None,
    ) -> Message:
        """
        Persist ``text`` from ``sender`` into the handle's conversation.

        Validation happens before any store call. A failure to create the
        conversation or to append the message raises SendFailed; nothing is
        delivered in that case and the send can be retried. The summary update
        is best effort.

        A retry appends a second message unless the caller passes the same
        ``client_message_id``.
        """
        if handle is None:
            raise NotResolved("Cannot send without a resolved conversation")
        body = (text or "").strip()
        if not body:
            raise MessageValidationError("Message content cannot be empty")
        member = handle.participant(sender.id)
        if member is None:
            raise MessageValidationError(f"{sender.id} is not a participant of {handle.key}")
        sender_profile = member.profile if sender.profile.is_blank() else sender.profile

        key = handle.key
        if handle.is_virtual:
            initial = await self._initial_record(handle)
            try:
                conversation = await self._store.create_if_absent(key, initial)
            except StoreError as exc:
                logger.warning("Send to %s failed at create: %s", key, exc)
                raise SendFailed(f"Could not create conversation {key}", exc) from exc
            handle.attach(conversation)

        try:
            message = await self._messages.append(key, sender.id, sender_profile, body, client_message_id)
        except StoreError as exc:
            logger.warning("Send to %s failed at append: %s", key, exc)
            raise SendFailed(f"Could not append message to {key}", exc) from exc

        try:
            await self._store.update_summary(key, message.text, message.created_at)
        except ConflictError as exc:
            logger.debug("Summary of %s left as is: %s", key, exc)
        except StoreError as exc:
            logger.warning("Summary of %s not updated: %s", key, exc)
        return message

    async def _initial_record(self, handle: ConversationHandle) -> Conversation:
        profiles: Dict[str, ParticipantProfile] = {}
        for participant in (handle.local, handle.remote):
            profiles[participant.id] = await self._profile_for(participant)
        return Conversation(
            key=handle.key,
            participants=[handle.local.id, handle.remote.id],
            participant_profiles=profiles,
            context_label=handle.context_label,
        )

    async def _profile_for(self, participant: Participant) -> ParticipantProfile:
        if not participant.profile.is_blank() or self._profiles is None:
            return participant.profile
        try:
            found = await self._profiles.profile_of(participant.id)
        except StoreError as exc:
            # display data only; create the conversation without it
            logger.warning("Profile lookup for %s failed: %s", participant.id, exc)
            return participant.profile
        return found or participant.profile
