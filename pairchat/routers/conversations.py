from typing import Optional

from fastapi import APIRouter, Depends, Query

from pairchat.config import Settings
from pairchat.exceptions import ChatError
from pairchat.services.chat_service import ChatService
from pairchat.utils.dependencies import get_app_settings, get_chat_service, http_error


router = APIRouter(prefix="/conversations", tags=["chat"])


@router.get("")
async def list_conversations(
    limit: Optional[int] = Query(None, ge=1, le=100),
    cursor: Optional[str] = None,
    service: ChatService = Depends(get_chat_service),
    settings: Settings = Depends(get_app_settings),
):
    try:
        page = await service.list_conversations(limit=limit or settings.inbox_page_size, cursor=cursor)
    except (ChatError, ValueError) as exc:
        raise http_error(exc) from exc
    return page.model_dump(mode="json")


@router.get("/{conversation_key}/messages")
async def list_messages(
    conversation_key: str,
    limit: Optional[int] = Query(None, ge=1, le=200),
    cursor: Optional[str] = None,
    service: ChatService = Depends(get_chat_service),
    settings: Settings = Depends(get_app_settings),
):
    # oldest page comes last; pass next_cursor back to walk further into the past
    try:
        page = await service.get_history(
            conversation_key, limit=limit or settings.history_page_size, cursor=cursor
        )
    except (ChatError, ValueError) as exc:
        raise http_error(exc) from exc
    return page.model_dump(mode="json")
