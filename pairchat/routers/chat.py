import asyncio
import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from pairchat.exceptions import (
    ChatError,
    InvalidPairing,
    MessageValidationError,
    NotResolved,
    SendFailed,
    StoreError,
)
from pairchat.schemas.conversation import Conversation
from pairchat.schemas.participant import Participant
from pairchat.services.chat_service import ChatService
from pairchat.services.identity import StaticIdentity
from pairchat.services.projection import MessageView
from pairchat.services.resolver import ConversationResolver
from pairchat.utils.dependencies import participant_from


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/messages", tags=["chat"])


class _SocketWriter:
    # socket writes come from the receive loop and from subscription callbacks
    def __init__(self, websocket: WebSocket) -> None:
        self._websocket = websocket
        self._lock = asyncio.Lock()

    async def send(self, payload: Dict[str, Any]) -> None:
        async with self._lock:
            await self._websocket.send_text(json.dumps(payload))


def _error_frame(exc: Exception, ref: Optional[str] = None) -> Dict[str, Any]:
    if isinstance(exc, (InvalidPairing, MessageValidationError, ValidationError)):
        code, retryable = "invalid", False
    elif isinstance(exc, NotResolved):
        code, retryable = "not_resolved", False
    elif isinstance(exc, SendFailed):
        code, retryable = "send_failed", True
    elif isinstance(exc, StoreError):
        code, retryable = "store_unavailable", True
    else:
        code, retryable = "error", False
    frame = {"type": "error", "code": code, "detail": str(exc), "retryable": retryable}
    if ref is not None:
        frame["client_message_id"] = ref
    return frame


async def _open(session: ConversationResolver, me: Participant, writer: _SocketWriter, msg: Dict[str, Any]) -> None:
    remote = Participant.model_validate(msg.get("remote") or {})
    handle = await session.resolve(me, remote, msg.get("context_label"))
    await writer.send({
        "type": "resolved",
        "conversation_key": handle.key,
        "virtual": handle.is_virtual,
        "conversation": handle.conversation.model_dump(mode="json") if handle.conversation else None,
    })

    async def on_conversation(conversation: Optional[Conversation]) -> None:
        if conversation is not None:
            await writer.send({"type": "conversation", "conversation": conversation.model_dump(mode="json")})

    async def on_batch(view: MessageView) -> None:
        await writer.send({
            "type": "messages",
            "conversation_key": handle.key,
            "items": [m.model_dump(mode="json") for m in view],
        })

    async def on_error(exc: Exception) -> None:
        await writer.send(_error_frame(exc))

    await session.subscribe_conversation(on_conversation, on_error)
    await session.subscribe_messages(on_batch, on_error)


async def _send(service: ChatService, session: ConversationResolver, writer: _SocketWriter, msg: Dict[str, Any]) -> None:
    client_message_id = msg.get("client_message_id")
    message = await service.send(session.handle, msg.get("text") or "", client_message_id)
    await writer.send({
        "type": "ack",
        "client_message_id": client_message_id,
        "message": message.model_dump(mode="json"),
    })


@router.websocket("/ws")
async def chat_socket(websocket: WebSocket):
    # identity comes from the query string: ?user_id=...&name=...&avatar=...
    params = websocket.query_params
    me = participant_from(params.get("user_id"), params.get("name"), params.get("avatar"))
    if me is None:
        await websocket.close(code=4401)
        return

    stores = websocket.app.state.stores
    service = ChatService(stores.conversations, stores.messages, StaticIdentity(me), stores.profiles)
    await websocket.accept()
    writer = _SocketWriter(websocket)
    session = service.new_session()
    try:
        while True:
            data = await websocket.receive_text()
            try:
                msg = json.loads(data)
            except ValueError:
                await writer.send({"type": "error", "code": "invalid", "detail": "Frames must be JSON", "retryable": False})
                continue
            if not isinstance(msg, dict):
                await writer.send({"type": "error", "code": "invalid", "detail": "Frames must be objects", "retryable": False})
                continue
            kind = msg.get("type")
            try:
                if kind == "open":
                    await _open(session, me, writer, msg)
                elif kind == "send":
                    await _send(service, session, writer, msg)
                else:
                    await writer.send({"type": "error", "code": "invalid", "detail": f"Unknown frame type {kind!r}", "retryable": False})
            except (ChatError, ValidationError) as exc:
                await writer.send(_error_frame(exc, msg.get("client_message_id")))
    except WebSocketDisconnect:
        logger.debug("Socket of %s disconnected", me.id)
    finally:
        await session.close()
