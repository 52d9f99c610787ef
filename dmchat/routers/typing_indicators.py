from fastapi import APIRouter, Depends

from dmchat.schemas.typing_indicator import TypingIndicator, TypingUpdate
from dmchat.services.core import ChatCore
from dmchat.utils.dependencies import get_core, get_current_user_id


router = APIRouter(prefix="/typing", tags=["chat"])


@router.put("/{partner_id}", response_model=TypingIndicator)
async def set_typing(partner_id: str, body: TypingUpdate, user_id: str = Depends(get_current_user_id), core: ChatCore = Depends(get_core)):
    return await core.typing.set_typing(user_id, partner_id, body.is_typing)
