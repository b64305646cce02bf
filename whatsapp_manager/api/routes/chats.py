"""
Chats routes for the WhatsApp Chat Manager API.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from whatsapp_manager.api.routes.dependencies import get_manager
from whatsapp_manager.core.engine import StorageUnavailableError
from whatsapp_manager.core.manager import WhatsAppManager
from whatsapp_manager.models.chat import Chat

router = APIRouter()


class ChatResponse(BaseModel):
    """Response model for a chat"""

    id: str
    type: str
    name: str
    pined: Optional[int] = None
    archived: bool = False
    muted: Optional[int] = None


class ChatListResponse(BaseModel):
    chats: List[ChatResponse]
    count: int


def chat_response(chat: Chat) -> dict:
    return {
        "id": chat.id,
        "type": chat.type,
        "name": chat.name,
        "pined": chat.pined,
        "archived": chat.archived,
        "muted": chat.muted,
    }


@router.get("/", response_model=ChatListResponse)
async def list_chats(
    offset: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
    manager: WhatsAppManager = Depends(get_manager),
):
    """List chats, most recently updated first"""
    try:
        chats = await manager.chats(offset, limit)
    except StorageUnavailableError as e:
        raise HTTPException(status_code=503, detail=f"Failed to get chats: {str(e)}")
    return {"chats": [chat_response(c) for c in chats], "count": len(chats)}


@router.get("/{cid}", response_model=ChatResponse)
async def get_chat(cid: str, manager: WhatsAppManager = Depends(get_manager)):
    try:
        chat = await manager.store.get_chat(cid)
    except StorageUnavailableError as e:
        raise HTTPException(status_code=503, detail=f"Failed to get chat: {str(e)}")
    if chat is None:
        raise HTTPException(status_code=404, detail=f"Chat not found: {cid}")
    return chat_response(chat)
