"""
Content cache.

A message's payload is resolved once and then served from the store. Text,
location and poll payloads are derived from the stored record; media is
downloaded through the adapter. A failed download yields ``b""`` and caches
nothing, so the next call tries again.
"""

import json
from typing import Any, Optional

from whatsapp_manager.core.log import get_logger
from whatsapp_manager.core.poll import new_tally
from whatsapp_manager.core.store import Store
from whatsapp_manager.models.chat import Message

logger = get_logger(__name__)


def message_lock(cid: str, mid: str) -> str:
    return f"message:{cid}/{mid}"


def derive_content(message: Message) -> Optional[bytes]:
    """Return the payload of a self-describing message, None for media"""
    if message.type == "text":
        return message.caption.encode("utf-8")

    if message.type == "location":
        body = message.body.get("locationMessage") or message.body.get(
            "liveLocationMessage"
        ) or {}
        location = {
            "lat": body.get("degreesLatitude"),
            "lng": body.get("degreesLongitude"),
        }
        return json.dumps(location).encode("utf-8")

    if message.type == "poll":
        return json.dumps(new_tally(message.body), ensure_ascii=False).encode("utf-8")

    return None


class ContentResolver:
    def __init__(self, store: Store, adapter: Any = None):
        self.store = store
        self.adapter = adapter

    async def content(self, cid: str, mid: str) -> bytes:
        """Return the payload of ``(cid, mid)``, fetching it at most once"""
        async with self.store.locks.hold(message_lock(cid, mid)):
            return await self.resolve(cid, mid)

    async def resolve(self, cid: str, mid: str, message: Optional[Message] = None) -> bytes:
        """Resolve without taking the message lock; the caller must hold it"""
        cached = await self.store.get_content(cid, mid)
        if cached is not None:
            return cached

        message = message or await self.store.get_message(cid, mid)
        if message is None:
            return b""

        data = derive_content(message)
        if data is None:
            data = await self._download(message)
        if data:
            await self.store.store_content(cid, mid, data)
        return data

    async def invalidate(self, cid: str, mid: str) -> bool:
        return await self.store.store_content(cid, mid, None)

    async def _download(self, message: Message) -> bytes:
        if self.adapter is None:
            return b""
        try:
            data = await self.adapter.download_media(
                {"key": message.key, "message": message.body}
            )
        except Exception as e:
            logger.warning(f"Media download failed for {message.cid}/{message.id}: {e}")
            return b""
        return bytes(data or b"")
