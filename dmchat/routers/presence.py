from fastapi import APIRouter, Depends

from dmchat.core.errors import NotFoundError
from dmchat.schemas.presence import Presence
from dmchat.services.core import ChatCore
from dmchat.utils.dependencies import get_core, get_current_user_id


router = APIRouter(prefix="/presence", tags=["chat"])


@router.post("/heartbeat", response_model=Presence)
async def heartbeat(user_id: str = Depends(get_current_user_id), core: ChatCore = Depends(get_core)):
    return await core.presence.heartbeat(user_id)


@router.get("/{user_id}", response_model=Presence)
async def presence(user_id: str, _: str = Depends(get_current_user_id), core: ChatCore = Depends(get_core)):
    """Online status and last-seen time; 404 if the user never connected."""
    state = await core.presence.get(user_id)
    if state is None:
        raise NotFoundError(f"No presence recorded for {user_id}", details={"user_id": user_id})
    return state
