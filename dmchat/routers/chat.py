import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from pydantic import ValidationError as PydanticValidationError

from dmchat.schemas.message import MarkConversationRead, Message, MessageCreate, MessagePage
from dmchat.services.chat_session import ChatSession
from dmchat.services.core import ChatCore
from dmchat.utils.dependencies import get_core, get_current_user_id
from dmchat.utils.security import InvalidTokenError, decode_access_token


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/messages", tags=["chat"])


@router.websocket("/ws/chat/{user_id}")
async def chat_socket(websocket: WebSocket, user_id: str, core: ChatCore = Depends(get_core)):
    # token travels as ?token=... since browsers cannot set WS headers
    token = websocket.query_params.get("token")
    if not token:
        await websocket.close(code=4401)
        return
    try:
        payload = decode_access_token(token)
    except (InvalidTokenError, PydanticValidationError):
        await websocket.close(code=4401)
        return
    if payload.get("sub") != user_id:
        await websocket.close(code=4403)
        return

    resume_since: Optional[int] = None
    raw_resume = websocket.query_params.get("resume_since")
    if raw_resume:
        try:
            resume_since = int(raw_resume)
        except ValueError:
            logger.info("Ignoring malformed resume_since=%r from %s", raw_resume, user_id)

    connection = await core.connections.connect(user_id, websocket)
    session = ChatSession(core, connection, websocket.send_json)
    logger.info("User %s connected (%s)", user_id, connection.id)
    try:
        await session.open(resume_since=resume_since)
        while True:
            data = await websocket.receive_text()
            try:
                command = json.loads(data)
            except json.JSONDecodeError:
                await websocket.send_json({"type": "error", "error": "Invalid JSON", "error_code": "BAD_FRAME", "retryable": False})
                continue
            if not isinstance(command, dict):
                await websocket.send_json({"type": "error", "error": "Frame must be an object", "error_code": "BAD_FRAME", "retryable": False})
                continue
            await session.handle(command)
    except WebSocketDisconnect:
        pass
    finally:
        await session.close()
        logger.info("User %s disconnected (%s)", user_id, connection.id)


@router.post("", response_model=Message, status_code=201)
async def send_message(body: MessageCreate, user_id: str = Depends(get_current_user_id), core: ChatCore = Depends(get_core)):
    return await core.messages.send(user_id, body.to, body.content, body.client_message_id)


@router.post("/mark_read")
async def mark_conversation_read(body: MarkConversationRead, user_id: str = Depends(get_current_user_id), core: ChatCore = Depends(get_core)):
    count = await core.messages.mark_conversation_read(user_id, body.from_user_id)
    return {"updated": count}


@router.get("/{partner_id}", response_model=MessagePage)
async def get_history(
    partner_id: str,
    limit: Optional[int] = Query(None, ge=1, le=200),
    cursor: Optional[str] = None,
    user_id: str = Depends(get_current_user_id),
    core: ChatCore = Depends(get_core),
):
    if limit is None and cursor is None:
        return MessagePage(items=await core.messages.list_conversation(user_id, partner_id))
    items, next_cursor = await core.messages.page_conversation(user_id, partner_id, limit=limit or 50, cursor=cursor)
    return MessagePage(items=items, next_cursor=next_cursor)


@router.post("/{message_id}/read", response_model=Message)
async def mark_read(message_id: int, user_id: str = Depends(get_current_user_id), core: ChatCore = Depends(get_core)):
    return await core.messages.mark_read(message_id, user_id)


@router.post("/{message_id}/delivered", response_model=Message)
async def mark_delivered(message_id: int, user_id: str = Depends(get_current_user_id), core: ChatCore = Depends(get_core)):
    return await core.messages.mark_delivered(message_id, user_id)
