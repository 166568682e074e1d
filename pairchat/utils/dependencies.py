from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from starlette.requests import HTTPConnection

from pairchat.config import Settings
from pairchat.database.stores import Stores
from pairchat.exceptions import (
    AccessDenied,
    ChatError,
    InvalidPairing,
    MessageValidationError,
    NotAuthenticated,
    SendFailed,
    StoreError,
)
from pairchat.schemas.participant import Participant, ParticipantProfile
from pairchat.services.chat_service import ChatService
from pairchat.services.identity import StaticIdentity


def get_stores(conn: HTTPConnection) -> Stores:
    return conn.app.state.stores


def get_app_settings(conn: HTTPConnection) -> Settings:
    return conn.app.state.settings


def participant_from(user_id: Optional[str], name: Optional[str] = None, avatar: Optional[str] = None) -> Optional[Participant]:
    if not user_id or not user_id.strip():
        return None
    return Participant(id=user_id, profile=ParticipantProfile(name=name, avatar_ref=avatar))


def get_current_participant(
    x_user_id: Optional[str] = Header(default=None),
    x_user_name: Optional[str] = Header(default=None),
    x_user_avatar: Optional[str] = Header(default=None),
) -> Participant:
    participant = participant_from(x_user_id, x_user_name, x_user_avatar)
    if participant is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-Id header")
    return participant


def get_chat_service(
    stores: Stores = Depends(get_stores),
    current: Participant = Depends(get_current_participant),
) -> ChatService:
    return ChatService(stores.conversations, stores.messages, StaticIdentity(current), stores.profiles)


def http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, (InvalidPairing, MessageValidationError, ValueError)):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if isinstance(exc, NotAuthenticated):
        return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc))
    if isinstance(exc, AccessDenied):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
    if isinstance(exc, (StoreError, SendFailed)):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    if isinstance(exc, ChatError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal error")
