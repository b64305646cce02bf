"""
Event reconciliation pipeline.

Turns the raw session events into upserts and deletes against the store and
re-emits normalized domain events. ``Reconciler.handle`` is the only entry
point: it parses one raw event, applies every resulting item in order and
awaits each one before the next, so events for the same entity are applied in
arrival order. Every mutation also holds the entity's keyed lock, which keeps
application commands issued concurrently from interleaving with it.

Nothing raised while applying an item escapes ``handle``; failures are logged
under the event's correlation id and the rest of the batch continues.
"""

import asyncio
import itertools
import json
from typing import Any, Callable, List, Optional, Set

from whatsapp_manager.core.adapter import SessionTerminatedError
from whatsapp_manager.core.content import ContentResolver, message_lock
from whatsapp_manager.core.emitter import EventEmitter
from whatsapp_manager.core.log import correlation, get_logger
from whatsapp_manager.core.poll import (
    PollDecryptionError,
    apply_vote,
    decrypt_poll_vote,
    secret_of,
)
from whatsapp_manager.core.store import Store
from whatsapp_manager.models.chat import (
    Chat,
    Contact,
    Message,
    MessageStatus,
    caption_of,
    content_type_of,
    phone_of,
)
from whatsapp_manager.models.events import (
    ARCHIVE_FIELD,
    MUTE_FIELD,
    PIN_FIELD,
    SPECIFIC_CHAT_FIELDS,
    ChatClear,
    ChatDelete,
    ChatUpsert,
    ConnectionUpdate,
    ContactUpsert,
    HistorySet,
    Invalid,
    MessageDelete,
    MessageEdit,
    MessageUpdate,
    MessageUpsert,
    PollVote,
    RawEvent,
    Reaction,
    parse_event,
)

logger = get_logger(__name__)


def normalize_user(jid: Optional[str]) -> Optional[str]:
    """Strip the device part of a jid (``123:7@s.whatsapp.net`` → ``123@s.whatsapp.net``)"""
    if not jid or "@" not in jid:
        return jid
    user, server = jid.split("@", 1)
    return f"{user.split(':')[0]}@{server}"


def _timestamp_or_none(value: Any) -> Optional[int]:
    if isinstance(value, dict):
        value = value.get("low")
    try:
        return int(value) or None
    except (TypeError, ValueError):
        return None


class Reconciler:
    def __init__(
        self,
        store: Store,
        resolver: ContentResolver,
        events: EventEmitter,
        me_id: Callable[[], Optional[str]] = lambda: None,
        prefetch_media: bool = False,
    ):
        self.store = store
        self.resolver = resolver
        self.events = events
        self.me_id = me_id
        self.prefetch_media = prefetch_media
        self.backfill_done = asyncio.Event()
        self._sequence = itertools.count(1)
        self._tasks: Set[asyncio.Task] = set()
        self._handlers = {
            ConnectionUpdate: self._on_connection,
            ContactUpsert: self._on_contact,
            ChatUpsert: self._on_chat,
            ChatDelete: self._on_chat_delete,
            MessageUpsert: self._on_message,
            MessageEdit: self._on_edit,
            MessageUpdate: self._on_update,
            MessageDelete: self._on_delete,
            ChatClear: self._on_clear,
            Reaction: self._on_reaction,
            PollVote: self._on_vote,
            HistorySet: self._on_history,
            Invalid: self._on_invalid,
        }

    @property
    def locks(self):
        return self.store.locks

    async def handle(self, name: str, payload: Any) -> int:
        """Apply one raw session event

        Returns:
            Number of items applied without error
        """
        with correlation(f"{name}:{next(self._sequence)}"):
            try:
                items = parse_event(name, payload)
            except Exception:
                logger.exception(f"Unparseable {name} payload")
                return 0

            applied = 0
            for item in items:
                if await self._apply(item):
                    applied += 1
            return applied

    async def _apply(self, item: RawEvent) -> bool:
        handler = self._handlers.get(type(item))
        if handler is None:
            logger.debug(f"No handler for {type(item).__name__}")
            return False
        try:
            await handler(item)
            return True
        except Exception:
            logger.exception(f"Failed to apply {type(item).__name__}")
            return False

    async def drain(self) -> None:
        """Wait for background media downloads"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # connection
    # ------------------------------------------------------------------

    async def _on_connection(self, event: ConnectionUpdate) -> None:
        if event.logged_out:
            logger.warning("Session logged out")
            await self.events.emit("error", SessionTerminatedError("Logged out"))
        elif event.connection == "open":
            await self.events.emit("open")
        elif event.connection == "close":
            await self.events.emit("close")

    # ------------------------------------------------------------------
    # contacts
    # ------------------------------------------------------------------

    async def _on_contact(self, event: ContactUpsert) -> None:
        async with self.locks.hold(f"contact:{event.id}"):
            stored = await self.store.get_contact(event.id)
            contact = stored or Contact(id=event.id)
            before = contact.to_dict()

            contact.raw.update(event.fields)
            contact.refresh_derived()
            me = normalize_user(self.me_id())
            if me:
                contact.me = normalize_user(contact.id) == me

            if stored is not None and contact.to_dict() == before:
                logger.debug(f"Contact {event.id} unchanged")
                return
            if not await self.store.store_contact(contact):
                logger.warning(f"Could not persist contact {event.id}")
                return

        await self.events.emit(
            "contact:created" if stored is None else "contact:updated", contact
        )

    # ------------------------------------------------------------------
    # chats
    # ------------------------------------------------------------------

    async def _on_chat(self, event: ChatUpsert) -> None:
        changes = event.changes
        emissions = []

        async with self.locks.hold(f"chat:{event.id}"):
            stored = await self.store.get_chat(event.id)
            chat = stored or Chat(id=event.id, name=phone_of(event.id))
            before = chat.to_dict()

            for name, value in changes.items():
                if name not in SPECIFIC_CHAT_FIELDS and value is not None:
                    chat.raw[name] = value
            if changes.get("name"):
                chat.name = changes["name"]

            # a specific field is reported whenever it is present
            if PIN_FIELD in changes:
                chat.pined = _timestamp_or_none(changes[PIN_FIELD])
                emissions.append(("chat:pined", event.id, chat.pined))
            if ARCHIVE_FIELD in changes:
                chat.archived = bool(changes[ARCHIVE_FIELD])
                emissions.append(("chat:archived", event.id, chat.archived))
            if MUTE_FIELD in changes:
                chat.muted = _timestamp_or_none(changes[MUTE_FIELD])
                emissions.append(("chat:muted", event.id, chat.muted))

            unchanged = stored is not None and chat.to_dict() == before
            if unchanged:
                logger.debug(f"Chat {event.id} unchanged")
            elif not await self.store.store_chat(chat):
                logger.warning(f"Could not persist chat {event.id}")
                return

        if emissions and not event.full:
            for name, *args in emissions:
                await self.events.emit(name, *args)
        elif not unchanged:
            generic = "chat:created" if stored is None else "chat:updated"
            await self.events.emit(generic, chat)

    async def _on_chat_delete(self, event: ChatDelete) -> None:
        async with self.locks.hold(f"chat:{event.id}"):
            existed = (
                await self.store.get_chat(event.id) is not None
                or await self.store.index.count(event.id) > 0
            )
            if not existed:
                logger.debug(f"Chat {event.id} already absent")
                return
            if not await self.store.delete_chat(event.id):
                logger.warning(f"Cascade delete of chat {event.id} incomplete")
        await self.events.emit("chat:deleted", event.id)

    async def ensure_chat(self, cid: str) -> Chat:
        """Return the chat, creating it (and emitting chat:created) when missing"""
        async with self.locks.hold(f"chat:{cid}"):
            chat = await self.store.get_chat(cid)
            if chat is not None:
                return chat
            contact = await self.store.get_contact(cid)
            chat = Chat(id=cid, name=contact.display_name if contact else phone_of(cid))
            await self.store.store_chat(chat)
        await self.events.emit("chat:created", chat)
        return chat

    # ------------------------------------------------------------------
    # messages
    # ------------------------------------------------------------------

    async def _on_message(self, event: MessageUpsert) -> None:
        created = None
        status_changed = None

        async with self.locks.hold(message_lock(event.cid, event.mid)):
            stored = await self.store.get_message(event.cid, event.mid)
            if stored is not None:
                # redelivery or echo of our own send
                if event.status is not None:
                    status = MessageStatus.coerce(event.status)
                    if status != stored.status:
                        stored.status = status
                        if await self.store.store_message(stored):
                            status_changed = stored
            else:
                created = self._build_message(event)
                if not await self.store.store_message(created):
                    logger.warning(f"Could not persist message {event.cid}/{event.mid}")
                    return
                await self.store.index.add(event.cid, event.mid, created.created_at)
                if not created.is_media:
                    await self.resolver.resolve(event.cid, event.mid, created)

        if status_changed is not None:
            await self.events.emit("message:status", status_changed)
            return
        if created is None:
            logger.debug(f"Duplicate message {event.cid}/{event.mid}")
            return

        await self.ensure_chat(event.cid)
        await self.events.emit("message:created", created)
        if created.is_media and self.prefetch_media:
            task = asyncio.create_task(self.resolver.content(event.cid, event.mid))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    def _build_message(self, event: MessageUpsert) -> Message:
        if event.from_me:
            uid = normalize_user(self.me_id()) or event.participant
        else:
            uid = event.participant or event.cid
        message = Message(
            id=event.mid,
            cid=event.cid,
            uid=uid,
            me=event.from_me,
            status=MessageStatus.coerce(event.status),
            starred=event.starred,
            created_at=event.timestamp,
        )
        message.apply_body(event.body)
        return message

    async def _on_edit(self, event: MessageEdit) -> None:
        async with self.locks.hold(message_lock(event.cid, event.mid)):
            message = await self.store.get_message(event.cid, event.mid)
            if message is None:
                logger.debug(f"Edit for unknown message {event.cid}/{event.mid} dropped")
                return

            caption = caption_of(event.body)
            content_type = content_type_of(message.body)
            inner = message.body.get(content_type) if content_type else None
            if isinstance(inner, dict):
                inner["text" if message.type == "text" else "caption"] = caption
            elif content_type:
                message.body[content_type] = caption
            else:
                message.body = {"conversation": caption}
            message.caption = caption
            message.edited = True

            if not await self.store.store_message(message):
                logger.warning(f"Could not persist edit of {event.cid}/{event.mid}")
                return
            # only text content is derived from the caption
            if message.type == "text":
                await self.resolver.invalidate(event.cid, event.mid)
                await self.resolver.resolve(event.cid, event.mid, message)

        await self.events.emit("message:updated", message)

    async def _on_update(self, event: MessageUpdate) -> None:
        async with self.locks.hold(message_lock(event.cid, event.mid)):
            message = await self.store.get_message(event.cid, event.mid)
            if message is None:
                logger.debug(f"Update for unknown message {event.cid}/{event.mid} dropped")
                return

            status_changed = False
            if event.status is not None:
                # last write wins, regressions included
                status = MessageStatus.coerce(event.status)
                status_changed = status != message.status
                message.status = status
            starred_changed = event.starred is not None and event.starred != message.starred
            if starred_changed:
                message.starred = event.starred

            if not (status_changed or starred_changed):
                return
            if not await self.store.store_message(message):
                logger.warning(f"Could not persist update of {event.cid}/{event.mid}")
                return

        if status_changed:
            await self.events.emit("message:status", message)
        if starred_changed:
            await self.events.emit("message:updated", message)

    async def remove_message(self, cid: str, mid: str) -> bool:
        """Delete a message with its content and index entry, emitting message:deleted"""
        async with self.locks.hold(message_lock(cid, mid)):
            existed = await self.store.get_message(cid, mid) is not None
            if not existed and not await self.store.index.contains(cid, mid):
                logger.debug(f"Delete for unknown message {cid}/{mid} dropped")
                return False
            if not await self.store.delete_message(cid, mid):
                logger.warning(f"Delete of {cid}/{mid} incomplete")
        await self.events.emit("message:deleted", cid, mid)
        return True

    async def _on_delete(self, event: MessageDelete) -> None:
        await self.remove_message(event.cid, event.mid)

    async def _on_clear(self, event: ChatClear) -> None:
        count = await self.store.index.count(event.cid)
        for mid in await self.store.index.paginate(event.cid, 0, count):
            await self.remove_message(event.cid, mid)

    async def _on_reaction(self, event: Reaction) -> None:
        message = await self.store.get_message(event.cid, event.mid)
        if message is None:
            logger.debug(f"Reaction for unknown message {event.cid}/{event.mid} dropped")
            return
        await self.events.emit("message:reacted", message, event.emoji, event.sender)

    async def _on_vote(self, event: PollVote) -> None:
        async with self.locks.hold(message_lock(event.cid, event.mid)):
            message = await self.store.get_message(event.cid, event.mid)
            if message is None or message.type != "poll":
                logger.debug(f"Vote for unknown poll {event.cid}/{event.mid} dropped")
                return

            me = normalize_user(self.me_id())
            voter = normalize_user(event.voter) or me
            creator = me if message.me else normalize_user(message.uid) or event.cid
            if not voter or not creator:
                logger.warning(f"Vote on {event.cid}/{event.mid} without voter identity")
                return

            try:
                tally = json.loads(await self.resolver.resolve(event.cid, event.mid, message))
                selected = decrypt_poll_vote(
                    secret_of(tally),
                    message.id,
                    creator,
                    voter,
                    event.enc_payload,
                    event.enc_iv,
                )
            except (PollDecryptionError, ValueError) as e:
                logger.warning(f"Dropping vote on {event.cid}/{event.mid}: {e}")
                return

            apply_vote(tally, voter, selected)
            data = json.dumps(tally, ensure_ascii=False).encode("utf-8")
            if not await self.store.store_content(event.cid, event.mid, data):
                logger.warning(f"Could not persist tally of {event.cid}/{event.mid}")
                return

        await self.events.emit("message:updated", message)

    # ------------------------------------------------------------------
    # backfill
    # ------------------------------------------------------------------

    async def _on_history(self, event: HistorySet) -> None:
        batch: List[RawEvent] = [*event.contacts, *event.chats, *event.messages]
        for item in batch:
            await self._apply(item)
        logger.info(
            f"History batch applied: {len(event.contacts)} contacts, "
            f"{len(event.chats)} chats, {len(event.messages)} messages"
        )
        if event.is_latest or (event.progress is not None and event.progress >= 100):
            self.backfill_done.set()

    async def _on_invalid(self, event: Invalid) -> None:
        logger.warning(f"Skipping invalid {event.event} item: {event.reason}")
