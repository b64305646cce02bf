"""
Typed storage for the normalized account state.

Wraps a string ``Engine`` and exposes per-entity operations. Layout::

    session/{key}                        opaque credential blobs
    contact/{id}                         Contact
    chat/{cid}                           Chat
    chat/{cid}/messages                  ordering index
    chat/{cid}/message/{mid}             Message
    chat/{cid}/message/{mid}/content     base64 payload

A record that cannot be decoded is reported as missing and logged; it never
raises into the caller.
"""

import base64
import binascii
import json
from typing import Any, Dict, List, Optional

from whatsapp_manager.core.engine import Engine
from whatsapp_manager.core.locks import KeyedLock
from whatsapp_manager.core.log import get_logger
from whatsapp_manager.core.ordering import MessageIndex
from whatsapp_manager.models.chat import Chat, Contact, Message

logger = get_logger(__name__)


def contact_key(contact_id: str) -> str:
    return f"contact/{contact_id}"


def chat_key(cid: str) -> str:
    return f"chat/{cid}"


def message_key(cid: str, mid: str) -> str:
    return f"chat/{cid}/message/{mid}"


def content_key(cid: str, mid: str) -> str:
    return f"chat/{cid}/message/{mid}/content"


class Store:
    def __init__(self, engine: Engine, locks: Optional[KeyedLock] = None):
        self.engine = engine
        self.locks = locks or KeyedLock()
        self.index = MessageIndex(engine, self.locks)

    async def _get_json(self, key: str) -> Optional[Dict[str, Any]]:
        raw = await self.engine.get(key)
        if raw is None:
            return None
        try:
            data = json.loads(raw)
        except ValueError as e:
            logger.warning(f"Corrupted record at {key}: {e}")
            return None
        return data if isinstance(data, dict) else None

    async def _set_json(self, key: str, data: Dict[str, Any]) -> bool:
        return await self.engine.set(
            key, json.dumps(data, ensure_ascii=False, sort_keys=True)
        )

    # ------------------------------------------------------------------
    # session
    # ------------------------------------------------------------------

    async def get_session(self, key: str) -> Optional[str]:
        return await self.engine.get(f"session/{key}")

    async def store_session(self, key: str, value: Optional[str]) -> bool:
        return await self.engine.set(f"session/{key}", value)

    # ------------------------------------------------------------------
    # contacts
    # ------------------------------------------------------------------

    async def get_contact(self, contact_id: str) -> Optional[Contact]:
        data = await self._get_json(contact_key(contact_id))
        try:
            return Contact.from_dict(data) if data else None
        except KeyError:
            logger.warning(f"Contact record without id at {contact_id}")
            return None

    async def store_contact(self, contact: Contact) -> bool:
        return await self._set_json(contact_key(contact.id), contact.to_dict())

    async def delete_contact(self, contact_id: str) -> bool:
        return await self.engine.set(contact_key(contact_id), None)

    async def list_contacts(self, offset: int = 0, limit: int = 50) -> List[Contact]:
        contacts = []
        for key in await self.engine.list("contact", offset, limit):
            contact = await self.get_contact(key[len("contact/") :])
            if contact:
                contacts.append(contact)
        return contacts

    # ------------------------------------------------------------------
    # chats
    # ------------------------------------------------------------------

    async def get_chat(self, cid: str) -> Optional[Chat]:
        data = await self._get_json(chat_key(cid))
        try:
            return Chat.from_dict(data) if data else None
        except KeyError:
            logger.warning(f"Chat record without id at {cid}")
            return None

    async def store_chat(self, chat: Chat) -> bool:
        return await self._set_json(chat_key(chat.id), chat.to_dict())

    async def list_chats(self, offset: int = 0, limit: int = 50) -> List[Chat]:
        chats = []
        for key in await self.engine.list("chat", offset, limit):
            chat = await self.get_chat(key[len("chat/") :])
            if chat:
                chats.append(chat)
        return chats

    async def delete_chat(self, cid: str) -> bool:
        """Remove a conversation with its messages, contents and index

        Children go first and the chat record last, so an interrupted cascade
        leaves at worst a chat with fewer messages, never an index that points
        at deleted records.
        """
        ok = await self.clear_messages(cid)
        ok = await self.engine.set(chat_key(cid), None) and ok
        return await self.engine.delete_prefix(chat_key(cid)) and ok

    # ------------------------------------------------------------------
    # messages
    # ------------------------------------------------------------------

    async def get_message(self, cid: str, mid: str) -> Optional[Message]:
        data = await self._get_json(message_key(cid, mid))
        try:
            return Message.from_dict(data) if data else None
        except KeyError:
            logger.warning(f"Message record without identity at {cid}/{mid}")
            return None

    async def store_message(self, message: Message) -> bool:
        return await self._set_json(
            message_key(message.cid, message.id), message.to_dict()
        )

    async def list_messages(
        self, cid: str, offset: int = 0, limit: int = 20
    ) -> List[Message]:
        messages = []
        for mid in await self.index.paginate(cid, offset, limit):
            message = await self.get_message(cid, mid)
            if message:
                messages.append(message)
        return messages

    async def delete_message(self, cid: str, mid: str) -> bool:
        """Remove a message, its content and its index entry"""
        ok = await self.index.remove(cid, mid)
        ok = await self.engine.set(content_key(cid, mid), None) and ok
        ok = await self.engine.set(message_key(cid, mid), None) and ok
        return await self.engine.delete_prefix(message_key(cid, mid)) and ok

    async def clear_messages(self, cid: str) -> bool:
        """Remove every message of a conversation, keeping the chat record"""
        ok = await self.index.clear(cid)
        return await self.engine.delete_prefix(f"chat/{cid}/message") and ok

    # ------------------------------------------------------------------
    # content
    # ------------------------------------------------------------------

    async def get_content(self, cid: str, mid: str) -> Optional[bytes]:
        raw = await self.engine.get(content_key(cid, mid))
        if raw is None:
            return None
        try:
            return base64.b64decode(raw, validate=True)
        except (binascii.Error, ValueError) as e:
            logger.warning(f"Corrupted content at {cid}/{mid}: {e}")
            return None

    async def store_content(self, cid: str, mid: str, data: Optional[bytes]) -> bool:
        value = base64.b64encode(data).decode("ascii") if data else None
        return await self.engine.set(content_key(cid, mid), value)
