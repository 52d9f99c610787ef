from typing import List

from fastapi import APIRouter, Depends

from dmchat.schemas.conversation import Conversation, StartConversation
from dmchat.services.core import ChatCore
from dmchat.utils.dependencies import get_core, get_current_user_id


router = APIRouter(prefix="/conversations", tags=["chat"])


@router.get("", response_model=List[Conversation])
async def list_conversations(user_id: str = Depends(get_current_user_id), core: ChatCore = Depends(get_core)):
    return await core.conversations.list_conversations(user_id)


@router.post("", response_model=Conversation)
async def start_conversation(body: StartConversation, user_id: str = Depends(get_current_user_id), core: ChatCore = Depends(get_core)):
    return await core.conversations.start_conversation(user_id, body.email)
