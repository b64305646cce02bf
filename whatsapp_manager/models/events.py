"""
Raw protocol events, converted into typed variants at the adapter boundary.

The session emits camelCase dict payloads whose shapes overlap (the same
``messages.upsert`` carries new messages, edits, revokes, reactions and poll
votes). ``parse_event`` turns one raw event into a list of the concrete
variants below so the reconciliation pipeline never inspects loose payloads.
Items that lack their identity fields become ``Invalid`` entries instead of
aborting the rest of the batch.
"""

import base64
import binascii
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from whatsapp_manager.models.chat import content_type_of

# protocolMessage.type values
PROTOCOL_REVOKE = 0
PROTOCOL_MESSAGE_EDIT = 14

CONTACT_FIELDS = ("name", "notify", "verifiedName", "imgUrl", "status", "lid")

# chats.update fields that carry their own domain event
PIN_FIELD = "pinned"
ARCHIVE_FIELD = "archived"
MUTE_FIELD = "muteEndTime"
SPECIFIC_CHAT_FIELDS = (PIN_FIELD, ARCHIVE_FIELD, MUTE_FIELD)


class InvalidEventError(Exception):
    """Raised when a raw payload lacks the fields that identify its entity"""

    pass


@dataclass
class ConnectionUpdate:
    connection: Optional[str] = None  # "open" | "close" | "connecting"
    logged_out: bool = False


@dataclass
class ContactUpsert:
    id: str
    fields: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ChatUpsert:
    """A chat update; ``full`` marks a complete object (upsert/backfill)"""

    id: str
    changes: Dict[str, Any] = field(default_factory=dict)
    full: bool = False


@dataclass
class ChatDelete:
    id: str


@dataclass
class MessageUpsert:
    cid: str
    mid: str
    from_me: bool = False
    participant: Optional[str] = None
    timestamp: int = 0
    body: Dict[str, Any] = field(default_factory=dict)
    status: Optional[int] = None
    starred: bool = False


@dataclass
class MessageEdit:
    cid: str
    mid: str
    body: Dict[str, Any] = field(default_factory=dict)


@dataclass
class MessageUpdate:
    cid: str
    mid: str
    status: Optional[int] = None
    starred: Optional[bool] = None


@dataclass
class MessageDelete:
    cid: str
    mid: str


@dataclass
class ChatClear:
    """Every message of a conversation was deleted"""

    cid: str


@dataclass
class Reaction:
    cid: str
    mid: str
    emoji: str = ""
    sender: Optional[str] = None


@dataclass
class PollVote:
    cid: str
    mid: str  # poll creation message
    voter: Optional[str] = None  # None when cast by this account
    enc_payload: bytes = b""
    enc_iv: bytes = b""
    timestamp: int = 0


@dataclass
class HistorySet:
    contacts: List[ContactUpsert] = field(default_factory=list)
    chats: List[ChatUpsert] = field(default_factory=list)
    messages: List["RawEvent"] = field(default_factory=list)
    progress: Optional[float] = None
    is_latest: bool = False


@dataclass
class Invalid:
    event: str
    reason: str


RawEvent = Union[
    ConnectionUpdate,
    ContactUpsert,
    ChatUpsert,
    ChatDelete,
    MessageUpsert,
    MessageEdit,
    MessageUpdate,
    MessageDelete,
    ChatClear,
    Reaction,
    PollVote,
    HistorySet,
    Invalid,
]


def _key_ids(key: Optional[Dict[str, Any]], default_cid: Optional[str] = None):
    key = key or {}
    cid = key.get("remoteJid") or default_cid
    mid = key.get("id")
    if not cid or not mid:
        raise InvalidEventError("message key without remoteJid/id")
    return cid, mid


def _timestamp(value: Any) -> int:
    if isinstance(value, dict):
        value = value.get("low", 0)
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _b64(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    try:
        return base64.b64decode(value or "", validate=True)
    except (binascii.Error, TypeError, ValueError) as e:
        raise InvalidEventError(f"invalid base64 field: {e}")


def parse_contact(item: Dict[str, Any]) -> ContactUpsert:
    contact_id = item.get("id")
    if not contact_id:
        raise InvalidEventError("contact without id")
    fields = {k: item[k] for k in CONTACT_FIELDS if item.get(k) is not None}
    return ContactUpsert(id=contact_id, fields=fields)


def parse_chat(item: Dict[str, Any], full: bool) -> ChatUpsert:
    chat_id = item.get("id")
    if not chat_id:
        raise InvalidEventError("chat without id")
    changes = {k: v for k, v in item.items() if k != "id"}
    return ChatUpsert(id=chat_id, changes=changes, full=full)


def parse_message(item: Dict[str, Any]) -> RawEvent:
    """Classify one ``messages.upsert`` entry"""
    key = item.get("key") or {}
    cid, mid = _key_ids(key)
    body = item.get("message") or {}
    content_type = content_type_of(body)

    if content_type == "reactionMessage":
        reaction = body[content_type] or {}
        target_cid, target_mid = _key_ids(reaction.get("key"), cid)
        sender = None if key.get("fromMe") else key.get("participant") or cid
        return Reaction(
            cid=target_cid,
            mid=target_mid,
            emoji=reaction.get("text") or "",
            sender=sender,
        )

    if content_type == "pollUpdateMessage":
        update = body[content_type] or {}
        target_cid, target_mid = _key_ids(update.get("pollCreationMessageKey"), cid)
        vote = update.get("vote") or {}
        voter = None if key.get("fromMe") else key.get("participant") or cid
        return PollVote(
            cid=target_cid,
            mid=target_mid,
            voter=voter,
            enc_payload=_b64(vote.get("encPayload")),
            enc_iv=_b64(vote.get("encIv")),
            timestamp=_timestamp(update.get("senderTimestampMs")),
        )

    if content_type == "protocolMessage":
        protocol = body[content_type] or {}
        target_cid, target_mid = _key_ids(protocol.get("key"), cid)
        if protocol.get("type") == PROTOCOL_MESSAGE_EDIT:
            edited = protocol.get("editedMessage")
            if not edited:
                raise InvalidEventError("edit without editedMessage")
            return MessageEdit(cid=target_cid, mid=target_mid, body=edited)
        if protocol.get("type", PROTOCOL_REVOKE) == PROTOCOL_REVOKE:
            return MessageDelete(cid=target_cid, mid=target_mid)
        raise InvalidEventError(f"unsupported protocolMessage type {protocol.get('type')}")

    return MessageUpsert(
        cid=cid,
        mid=mid,
        from_me=bool(key.get("fromMe", False)),
        participant=key.get("participant"),
        timestamp=_timestamp(item.get("messageTimestamp")),
        body=body,
        status=item.get("status"),
        starred=bool(item.get("starred", False)),
    )


def parse_message_update(item: Dict[str, Any]) -> RawEvent:
    cid, mid = _key_ids(item.get("key"))
    update = item.get("update") or {}
    edited = ((update.get("message") or {}).get("editedMessage") or {}).get("message")
    if edited:
        return MessageEdit(cid=cid, mid=mid, body=edited)
    starred = update.get("starred")
    return MessageUpdate(
        cid=cid,
        mid=mid,
        status=update.get("status"),
        starred=bool(starred) if starred is not None else None,
    )


def _each(name: str, items, parse) -> List[RawEvent]:
    events: List[RawEvent] = []
    for item in items or []:
        try:
            events.append(parse(item))
        except InvalidEventError as e:
            events.append(Invalid(event=name, reason=str(e)))
    return events


def parse_event(name: str, payload: Any) -> List[RawEvent]:
    """Convert one raw session event into typed variants

    Args:
        name: Event name from the session vocabulary
        payload: Raw event payload

    Returns:
        Typed events in arrival order. Unknown event names yield nothing.
    """
    if name == "connection.update":
        payload = payload or {}
        return [
            ConnectionUpdate(
                connection=payload.get("connection"),
                logged_out=bool(payload.get("loggedOut", False)),
            )
        ]

    if name in ("contacts.upsert", "contacts.update"):
        return _each(name, payload, parse_contact)

    if name == "chats.upsert":
        return _each(name, payload, lambda item: parse_chat(item, full=True))

    if name == "chats.update":
        return _each(name, payload, lambda item: parse_chat(item, full=False))

    if name == "chats.delete":
        return [ChatDelete(id=cid) for cid in payload or [] if cid]

    if name == "messages.upsert":
        return _each(name, (payload or {}).get("messages"), parse_message)

    if name == "messages.update":
        return _each(name, payload, parse_message_update)

    if name == "messages.delete":
        payload = payload or {}
        if payload.get("all"):
            if not payload.get("jid"):
                return [Invalid(event=name, reason="delete-all without jid")]
            return [ChatClear(cid=payload["jid"])]
        return _each(
            name,
            payload.get("keys"),
            lambda key: MessageDelete(*_key_ids(key)),
        )

    if name == "messages.reaction":

        def _reaction(item: Dict[str, Any]) -> Reaction:
            cid, mid = _key_ids(item.get("key"))
            reaction = item.get("reaction") or {}
            reaction_key = reaction.get("key") or {}
            sender = None if reaction_key.get("fromMe") else reaction_key.get("participant")
            return Reaction(cid=cid, mid=mid, emoji=reaction.get("text") or "", sender=sender)

        return _each(name, payload, _reaction)

    if name == "messaging-history.set":
        payload = payload or {}
        contacts = _each(name, payload.get("contacts"), parse_contact)
        chats = _each(name, payload.get("chats"), lambda item: parse_chat(item, full=True))
        invalid = [e for e in contacts + chats if isinstance(e, Invalid)]
        progress = payload.get("progress")
        history = HistorySet(
            contacts=[e for e in contacts if isinstance(e, ContactUpsert)],
            chats=[e for e in chats if isinstance(e, ChatUpsert)],
            messages=_each(name, payload.get("messages"), parse_message),
            progress=float(progress) if progress is not None else None,
            is_latest=bool(payload.get("isLatest", False)),
        )
        return invalid + [history]

    return []
