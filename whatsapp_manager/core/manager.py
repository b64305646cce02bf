"""
WhatsApp 账号管理入口

``WhatsAppManager`` wires a protocol adapter, a storage engine and the
reconciliation pipeline together and exposes queries over the normalized
model plus the outbound commands. Commands never raise adapter failures:
they log and return ``False``/``None``.
"""

import asyncio
import json
from functools import partial
from typing import Any, Callable, Dict, List, Optional

from whatsapp_manager.core.adapter import SESSION_EVENTS, ProtocolAdapter
from whatsapp_manager.core.config import AppConfig, load_config
from whatsapp_manager.core.content import ContentResolver
from whatsapp_manager.core.drivers import build_engine
from whatsapp_manager.core.emitter import EventEmitter
from whatsapp_manager.core.engine import Engine
from whatsapp_manager.core.log import get_logger, set_level
from whatsapp_manager.core.pipeline import Reconciler, normalize_user
from whatsapp_manager.core.poll import count_votes, poll_of
from whatsapp_manager.core.store import Store
from whatsapp_manager.models.chat import (
    Chat,
    Contact,
    Message,
    chat_type,
    normalize_jid,
)

logger = get_logger(__name__)

WATCHED_EVENTS = ("message:updated", "message:status", "message:reacted", "message:deleted")


class WhatsAppManager:
    def __init__(
        self,
        adapter: Optional[ProtocolAdapter] = None,
        engine: Optional[Engine] = None,
        config: Optional[AppConfig] = None,
    ):
        self.config = config or load_config()
        set_level(self.config.log_level)
        self.engine = engine or build_engine(self.config)
        self.store = Store(self.engine)
        self.events = EventEmitter()
        self.resolver = ContentResolver(self.store)
        self.pipeline = Reconciler(
            self.store,
            self.resolver,
            self.events,
            me_id=lambda: self.me_id,
            prefetch_media=self.config.prefetch_media,
        )
        self.adapter: Optional[ProtocolAdapter] = None
        if adapter is not None:
            self.attach(adapter)

    @property
    def me_id(self) -> Optional[str]:
        return normalize_user(self.adapter.me_id) if self.adapter else None

    def attach(self, adapter: ProtocolAdapter) -> None:
        """Subscribe the pipeline to every session event of ``adapter``"""
        self.adapter = adapter
        self.resolver.adapter = adapter
        for name in SESSION_EVENTS:
            adapter.on(name, partial(self.pipeline.handle, name))

    def on(self, event: str, listener: Callable[..., Any]) -> Callable[[], None]:
        return self.events.on(event, listener)

    async def close(self) -> None:
        await self.pipeline.drain()
        await self.engine.close()

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------

    async def contact(self, contact_id: str) -> Optional[Contact]:
        return await self.store.get_contact(normalize_jid(contact_id))

    async def contacts(self, offset: int = 0, limit: int = 50) -> List[Contact]:
        return await self.store.list_contacts(offset, limit)

    async def chat(self, cid: str) -> Optional[Chat]:
        """Return a chat, opening one for a known contact if needed"""
        cid = normalize_jid(cid)
        chat = await self.store.get_chat(cid)
        if chat is not None:
            return chat
        if await self.store.get_contact(cid) is None:
            return None
        return await self.pipeline.ensure_chat(cid)

    async def chats(self, offset: int = 0, limit: int = 50) -> List[Chat]:
        return await self.store.list_chats(offset, limit)

    async def message(self, cid: str, mid: str) -> Optional[Message]:
        return await self.store.get_message(cid, mid)

    async def messages(self, cid: str, offset: int = 0, limit: int = 20) -> List[Message]:
        return await self.store.list_messages(cid, offset, limit)

    async def content(self, cid: str, mid: str) -> bytes:
        return await self.resolver.content(cid, mid)

    async def votes(self, cid: str, mid: str) -> List[Dict[str, Any]]:
        """Return ``[{"name", "count"}]`` for a poll, [] for anything else"""
        message = await self.store.get_message(cid, mid)
        if message is None or message.type != "poll":
            return []
        data = await self.resolver.content(cid, mid)
        try:
            return count_votes(json.loads(data)) if data else []
        except ValueError:
            logger.warning(f"Corrupted tally for {cid}/{mid}")
            return []

    async def members(self, cid: str, offset: int = 0, limit: int = 50) -> List[Contact]:
        """Participants of a group, or the contact and self for a direct chat"""
        if chat_type(cid) != "group":
            ids = [cid] + ([self.me_id] if self.me_id else [])
        else:
            if self.adapter is None:
                return []
            try:
                metadata = await self.adapter.group_metadata(cid)
            except Exception as e:
                logger.warning(f"Could not fetch metadata of {cid}: {e}")
                return []
            ids = [p["id"] for p in (metadata or {}).get("participants", []) if p.get("id")]

        members = []
        for member_id in ids[offset : offset + limit]:
            contact = await self.store.get_contact(member_id)
            if contact is None:
                await self.pipeline.handle("contacts.upsert", [{"id": member_id}])
                contact = await self.store.get_contact(member_id)
            if contact is not None:
                members.append(contact)
        return members

    # ------------------------------------------------------------------
    # sending
    # ------------------------------------------------------------------

    async def _quote(self, cid: str, quoted_mid: Optional[str]) -> Optional[Dict[str, Any]]:
        if not quoted_mid:
            return None
        quoted = await self.store.get_message(cid, quoted_mid)
        return {"key": quoted.key, "message": quoted.body} if quoted else None

    async def _send(
        self,
        cid: str,
        content: Dict[str, Any],
        quoted_mid: Optional[str] = None,
        payload: Optional[bytes] = None,
    ) -> Optional[Message]:
        if self.adapter is None:
            logger.warning("Not connected, message not sent")
            return None
        cid = normalize_jid(cid)
        try:
            raw = await self.adapter.send_message(
                cid, content, await self._quote(cid, quoted_mid)
            )
        except Exception as e:
            logger.warning(f"Send to {cid} failed: {e}")
            return None
        if not raw or not (raw.get("key") or {}).get("id"):
            return None

        key = raw["key"]
        sent_cid = key.get("remoteJid") or cid
        if payload:
            # uploaded bytes seed the cache before the record exists
            await self.store.store_content(sent_cid, key["id"], payload)
        await self.pipeline.handle("messages.upsert", {"messages": [raw], "type": "append"})
        return await self.store.get_message(sent_cid, key["id"])

    async def send_text(
        self, cid: str, text: str, quoted_mid: Optional[str] = None
    ) -> Optional[Message]:
        return await self._send(cid, {"text": text}, quoted_mid)

    async def send_image(
        self,
        cid: str,
        data: bytes,
        caption: str = "",
        mimetype: str = "image/jpeg",
        quoted_mid: Optional[str] = None,
    ) -> Optional[Message]:
        content = {"image": data, "caption": caption, "mimetype": mimetype}
        return await self._send(cid, content, quoted_mid, payload=data)

    async def send_video(
        self,
        cid: str,
        data: bytes,
        caption: str = "",
        mimetype: str = "video/mp4",
        quoted_mid: Optional[str] = None,
    ) -> Optional[Message]:
        content = {"video": data, "caption": caption, "mimetype": mimetype}
        return await self._send(cid, content, quoted_mid, payload=data)

    async def send_audio(
        self,
        cid: str,
        data: bytes,
        ptt: bool = False,
        mimetype: str = "audio/ogg; codecs=opus",
        quoted_mid: Optional[str] = None,
    ) -> Optional[Message]:
        content = {"audio": data, "ptt": ptt, "mimetype": mimetype}
        return await self._send(cid, content, quoted_mid, payload=data)

    async def send_location(
        self, cid: str, lat: float, lng: float, quoted_mid: Optional[str] = None
    ) -> Optional[Message]:
        content = {"location": {"degreesLatitude": lat, "degreesLongitude": lng}}
        return await self._send(cid, content, quoted_mid)

    async def send_poll(
        self, cid: str, name: str, options: List[str], selectable: int = 1
    ) -> Optional[Message]:
        content = {"poll": {"name": name, "values": options, "selectableCount": selectable}}
        return await self._send(cid, content)

    # ------------------------------------------------------------------
    # message actions
    # ------------------------------------------------------------------

    async def _command(self, description: str, call) -> bool:
        if self.adapter is None:
            logger.warning(f"Not connected, cannot {description}")
            return False
        try:
            await call()
        except Exception as e:
            logger.warning(f"Could not {description}: {e}")
            return False
        return True

    async def react(self, cid: str, mid: str, emoji: str) -> bool:
        message = await self.store.get_message(cid, mid)
        if message is None:
            return False
        content = {"react": {"text": emoji, "key": message.key}}
        return await self._command(
            f"react to {cid}/{mid}", lambda: self.adapter.send_message(cid, content)
        )

    async def edit(self, cid: str, mid: str, text: str) -> bool:
        """Edit one of our own text messages"""
        message = await self.store.get_message(cid, mid)
        if message is None or not message.me or message.type != "text":
            return False
        content = {"text": text, "edit": message.key}
        ok = await self._command(
            f"edit {cid}/{mid}", lambda: self.adapter.send_message(cid, content)
        )
        if ok:
            update = {"message": {"editedMessage": {"message": {"conversation": text}}}}
            await self.pipeline.handle("messages.update", [{"key": message.key, "update": update}])
        return ok

    async def remove_message(self, cid: str, mid: str) -> bool:
        """Revoke a message for everyone and drop it locally"""
        message = await self.store.get_message(cid, mid)
        if message is None:
            return False
        ok = await self._command(
            f"delete {cid}/{mid}",
            lambda: self.adapter.send_message(cid, {"delete": message.key}),
        )
        if ok:
            await self.pipeline.remove_message(cid, mid)
        return ok

    async def forward(self, cid: str, mid: str, target_cid: str) -> Optional[Message]:
        """Send the content of ``(cid, mid)`` again to ``target_cid``"""
        message = await self.store.get_message(cid, mid)
        if message is None:
            return None
        data = await self.content(cid, mid)

        if message.type == "image":
            return await self.send_image(target_cid, data, message.caption, message.mime)
        if message.type == "video":
            return await self.send_video(target_cid, data, message.caption, message.mime)
        if message.type == "audio":
            return await self.send_audio(target_cid, data, mimetype=message.mime)
        if message.type == "location":
            location = json.loads(data) if data else {}
            return await self.send_location(target_cid, location.get("lat"), location.get("lng"))
        if message.type == "poll":
            poll = poll_of(message.body) or {}
            options = [o.get("optionName", "") for o in poll.get("options", [])]
            return await self.send_poll(
                target_cid, poll.get("name", ""), options, poll.get("selectableOptionsCount") or 1
            )
        return await self.send_text(target_cid, message.caption)

    async def seen(self, cid: str, mid: Optional[str] = None) -> bool:
        """Mark ``mid`` (default: the newest message) as read"""
        if mid is None:
            newest = await self.store.index.paginate(cid, 0, 1)
            if not newest:
                return False
            mid = newest[0]
        message = await self.store.get_message(cid, mid)
        if message is None:
            return False
        return await self._command(
            f"mark {cid}/{mid} read", lambda: self.adapter.read_messages([message.key])
        )

    # ------------------------------------------------------------------
    # chat actions
    # ------------------------------------------------------------------

    async def _last_messages(self, cid: str) -> List[Dict[str, Any]]:
        latest = await self.store.list_messages(cid, 0, 1)
        return [
            {"key": m.key, "messageTimestamp": m.created_at} for m in latest
        ]

    async def pin(self, cid: str, value: bool = True) -> bool:
        return await self._command(
            f"pin {cid}", lambda: self.adapter.chat_modify(cid, {"pin": value})
        )

    async def archive(self, cid: str, value: bool = True) -> bool:
        modification = {"archive": value, "lastMessages": await self._last_messages(cid)}
        return await self._command(
            f"archive {cid}", lambda: self.adapter.chat_modify(cid, modification)
        )

    async def mute(self, cid: str, duration: Optional[int] = None) -> bool:
        """Mute for ``duration`` seconds; None unmutes"""
        modification = {"mute": duration * 1000 if duration else None}
        return await self._command(
            f"mute {cid}", lambda: self.adapter.chat_modify(cid, modification)
        )

    async def remove_chat(self, cid: str) -> bool:
        """Leave a group or delete a direct chat, then drop it locally"""
        if chat_type(cid) == "group":
            call = lambda: self.adapter.group_leave(cid)
        else:
            modification = {"delete": True, "lastMessages": await self._last_messages(cid)}
            call = lambda: self.adapter.chat_modify(cid, modification)
        ok = await self._command(f"remove {cid}", call)
        if ok:
            await self.pipeline.handle("chats.delete", [cid])
        return ok

    # ------------------------------------------------------------------
    # contact actions
    # ------------------------------------------------------------------

    async def rename_contact(self, contact_id: str, name: Optional[str]) -> bool:
        """Set the local name of a contact; empty or None clears it"""
        contact_id = normalize_jid(contact_id)
        async with self.store.locks.hold(f"contact:{contact_id}"):
            contact = await self.store.get_contact(contact_id)
            if contact is None:
                return False
            custom_name = name or None
            if contact.custom_name == custom_name:
                return True
            contact.custom_name = custom_name
            if not await self.store.store_contact(contact):
                return False
        await self.events.emit("contact:updated", contact)
        return True

    async def refresh_contact(self, contact_id: str) -> Optional[Contact]:
        """Fetch photo and bio through the session and merge them"""
        contact_id = normalize_jid(contact_id)
        if self.adapter is None:
            return await self.store.get_contact(contact_id)

        update: Dict[str, Any] = {"id": contact_id}
        try:
            update["imgUrl"] = await self.adapter.profile_picture_url(contact_id)
        except Exception as e:
            logger.info(f"No profile picture for {contact_id}: {e}")
        try:
            update["status"] = await self.adapter.fetch_status(contact_id)
        except Exception as e:
            logger.info(f"No status for {contact_id}: {e}")
        await self.pipeline.handle("contacts.update", [update])
        return await self.store.get_contact(contact_id)

    # ------------------------------------------------------------------
    # observation
    # ------------------------------------------------------------------

    def watch(self, cid: str, mid: str, handler: Callable[..., Any]) -> Callable[[], None]:
        """Call ``handler(event, *args)`` for every change of one message

        Returns:
            A callable that removes the subscription
        """

        def listen(event: str):
            def listener(*args):
                first = args[0]
                if isinstance(first, Message):
                    target = (first.cid, first.id)
                else:
                    target = (first, args[1] if len(args) > 1 else None)
                if target == (cid, mid):
                    return handler(event, *args)
                return None

            return listener

        unsubscribers = [self.events.on(event, listen(event)) for event in WATCHED_EVENTS]

        def unsubscribe() -> None:
            for off in unsubscribers:
                off()

        return unsubscribe

    async def wait_for_backfill(self, timeout: Optional[float] = None) -> bool:
        """Wait until the initial history sync completes

        Timing out only stops waiting; writes in progress are not cancelled.
        """
        if timeout is None:
            timeout = self.config.backfill_timeout
        try:
            await asyncio.wait_for(self.pipeline.backfill_done.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True
