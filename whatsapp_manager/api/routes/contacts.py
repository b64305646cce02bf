"""
Contacts routes for the WhatsApp Chat Manager API.

Provides endpoints for:
- List stored contacts, most recently updated first
- Get one contact by jid or phone number
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from whatsapp_manager.api.routes.dependencies import get_manager
from whatsapp_manager.core.engine import StorageUnavailableError
from whatsapp_manager.core.manager import WhatsAppManager
from whatsapp_manager.models.chat import Contact

router = APIRouter()


class ContactResponse(BaseModel):
    """Response model for a contact"""

    id: str
    phone: str
    name: str
    display_name: str
    photo: Optional[str] = None
    content: str = ""
    custom_name: Optional[str] = None
    me: bool = False


class ContactListResponse(BaseModel):
    """Response model for contact list"""

    contacts: List[ContactResponse]
    count: int


def contact_response(contact: Contact) -> dict:
    return {
        "id": contact.id,
        "phone": contact.phone,
        "name": contact.name,
        "display_name": contact.display_name,
        "photo": contact.photo,
        "content": contact.content,
        "custom_name": contact.custom_name,
        "me": contact.me,
    }


@router.get("/", response_model=ContactListResponse)
async def list_contacts(
    offset: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
    manager: WhatsAppManager = Depends(get_manager),
):
    """List stored contacts"""
    try:
        contacts = await manager.contacts(offset, limit)
    except StorageUnavailableError as e:
        raise HTTPException(status_code=503, detail=f"Failed to get contacts: {str(e)}")
    return {
        "contacts": [contact_response(c) for c in contacts],
        "count": len(contacts),
    }


@router.get("/{contact_id}", response_model=ContactResponse)
async def get_contact(contact_id: str, manager: WhatsAppManager = Depends(get_manager)):
    """Get a contact by jid or bare phone number"""
    try:
        contact = await manager.contact(contact_id)
    except StorageUnavailableError as e:
        raise HTTPException(status_code=503, detail=f"Failed to get contact: {str(e)}")
    if contact is None:
        raise HTTPException(status_code=404, detail=f"Contact not found: {contact_id}")
    return contact_response(contact)
