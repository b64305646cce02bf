"""
Messages routes for the WhatsApp Chat Manager API.

Provides endpoints for:
- Paginate a chat's messages, newest first
- Get one message
- Download a message's content with its MIME type
- Poll vote counts
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from pydantic import BaseModel

from whatsapp_manager.api.routes.dependencies import get_manager
from whatsapp_manager.core.engine import StorageUnavailableError
from whatsapp_manager.core.manager import WhatsAppManager
from whatsapp_manager.models.chat import Message

router = APIRouter()


class MessageResponse(BaseModel):
    """Response model for a message"""

    id: str
    cid: str
    uid: Optional[str] = None
    mid: Optional[str] = None
    me: bool = False
    type: str
    mime: str
    caption: str = ""
    status: int = 0
    starred: bool = False
    forwarded: bool = False
    created_at: int = 0
    deleted_at: Optional[int] = None
    edited: bool = False


class MessageListResponse(BaseModel):
    messages: List[MessageResponse]
    count: int
    total: int


class VoteResponse(BaseModel):
    name: str
    count: int


def message_response(message: Message) -> dict:
    data = message.to_dict()
    data.pop("body", None)
    return data


async def _require_message(manager: WhatsAppManager, cid: str, mid: str) -> Message:
    try:
        message = await manager.message(cid, mid)
    except StorageUnavailableError as e:
        raise HTTPException(status_code=503, detail=f"Failed to get message: {str(e)}")
    if message is None:
        raise HTTPException(status_code=404, detail=f"Message not found: {cid}/{mid}")
    return message


@router.get("/{cid}/messages", response_model=MessageListResponse)
async def list_messages(
    cid: str,
    offset: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=500),
    manager: WhatsAppManager = Depends(get_manager),
):
    """Page through a chat's messages, newest first"""
    try:
        messages = await manager.messages(cid, offset, limit)
        total = await manager.store.index.count(cid)
    except StorageUnavailableError as e:
        raise HTTPException(status_code=503, detail=f"Failed to get messages: {str(e)}")
    return {
        "messages": [message_response(m) for m in messages],
        "count": len(messages),
        "total": total,
    }


@router.get("/{cid}/messages/{mid}", response_model=MessageResponse)
async def get_message(cid: str, mid: str, manager: WhatsAppManager = Depends(get_manager)):
    return message_response(await _require_message(manager, cid, mid))


@router.get("/{cid}/messages/{mid}/content")
async def get_content(cid: str, mid: str, manager: WhatsAppManager = Depends(get_manager)):
    """Raw message content served with the message MIME type"""
    message = await _require_message(manager, cid, mid)
    data = await manager.content(cid, mid)
    return Response(content=data, media_type=message.mime)


@router.get("/{cid}/messages/{mid}/votes", response_model=List[VoteResponse])
async def get_votes(cid: str, mid: str, manager: WhatsAppManager = Depends(get_manager)):
    message = await _require_message(manager, cid, mid)
    if message.type != "poll":
        raise HTTPException(status_code=400, detail=f"Message {mid} is not a poll")
    return await manager.votes(cid, mid)
