"""
WhatsApp 账号的规范化数据模型

Contacts, chats and messages as they are persisted by the store. Every model
round-trips through ``to_dict``/``from_dict`` so any engine can hold it as a
JSON document.
"""

from dataclasses import asdict, dataclass, field
from enum import IntEnum
from typing import Any, Dict, Optional

GROUP_SUFFIX = "@g.us"
USER_SUFFIX = "@s.whatsapp.net"


class MessageStatus(IntEnum):
    """Delivery state reported by the protocol"""

    PENDING = 0
    SERVER_ACK = 1
    DELIVERED = 2
    READ = 3
    PLAYED = 4

    @classmethod
    def coerce(cls, value: Any) -> "MessageStatus":
        try:
            return cls(int(value))
        except (TypeError, ValueError):
            return cls.PENDING


# Protocol content keys → normalized message type
MESSAGE_TYPE_MAP: Dict[str, str] = {
    "conversation": "text",
    "extendedTextMessage": "text",
    "imageMessage": "image",
    "videoMessage": "video",
    "audioMessage": "audio",
    "locationMessage": "location",
    "liveLocationMessage": "location",
    "pollCreationMessage": "poll",
    "pollCreationMessageV2": "poll",
    "pollCreationMessageV3": "poll",
}

MEDIA_TYPES = ("image", "video", "audio")

# Envelope keys that never carry the message body itself
_ENVELOPE_KEYS = ("messageContextInfo", "senderKeyDistributionMessage")


def chat_type(cid: str) -> str:
    """Derive the conversation type from its id suffix"""
    return "group" if cid.endswith(GROUP_SUFFIX) else "contact"


def phone_of(jid: str) -> str:
    return jid.split("@")[0].split(":")[0]


def normalize_jid(uid: str) -> str:
    """Expand a bare phone number into a user jid"""
    return uid if "@" in uid else f"{uid}{USER_SUFFIX}"


def content_type_of(body: Optional[Dict[str, Any]]) -> Optional[str]:
    """Return the first key of a protocol message body that holds content"""
    if not body:
        return None
    for key in body:
        if key not in _ENVELOPE_KEYS and body[key] is not None:
            return key
    return None


def caption_of(body: Optional[Dict[str, Any]]) -> str:
    content_type = content_type_of(body)
    if content_type is None:
        return ""
    inner = body[content_type]
    if isinstance(inner, str):
        return inner
    if isinstance(inner, dict):
        return inner.get("caption") or inner.get("text") or inner.get("name") or ""
    return ""


def context_info_of(body: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    content_type = content_type_of(body)
    if content_type is None:
        return {}
    inner = body[content_type]
    if isinstance(inner, dict):
        return inner.get("contextInfo") or {}
    return {}


@dataclass
class Contact:
    """联系人数据模型"""

    id: str  # jid (主键)
    name: str = ""  # 远端显示名
    photo: Optional[str] = None  # 头像 URL, 可能过期
    content: str = ""  # 个人签名
    custom_name: Optional[str] = None  # 本地备注
    me: bool = False
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def phone(self) -> str:
        return phone_of(self.id)

    @property
    def display_name(self) -> str:
        return self.custom_name or self.name or self.phone

    def refresh_derived(self) -> None:
        """Recompute the promoted fields from the raw protocol fields"""
        self.name = (
            self.raw.get("name")
            or self.raw.get("notify")
            or self.raw.get("verifiedName")
            or self.phone
        )
        self.photo = self.raw.get("imgUrl")
        self.content = self.raw.get("status") or ""

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["phone"] = self.phone
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Contact":
        return cls(
            id=data["id"],
            name=data.get("name") or "",
            photo=data.get("photo"),
            content=data.get("content") or "",
            custom_name=data.get("custom_name"),
            me=bool(data.get("me", False)),
            raw=dict(data.get("raw") or {}),
        )


@dataclass
class Chat:
    """会话数据模型

    ``type`` is a property: it is always recomputed from the id.
    """

    id: str
    name: str = ""
    pined: Optional[int] = None  # 置顶时间戳
    archived: bool = False
    muted: Optional[int] = None  # 免打扰截止时间戳
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def type(self) -> str:
        return chat_type(self.id)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Chat":
        return cls(
            id=data["id"],
            name=data.get("name") or phone_of(data["id"]),
            pined=data.get("pined"),
            archived=bool(data.get("archived", False)),
            muted=data.get("muted"),
            raw=dict(data.get("raw") or {}),
        )


@dataclass
class Message:
    """消息数据模型"""

    id: str
    cid: str  # 所属会话
    uid: Optional[str] = None  # 发送者
    mid: Optional[str] = None  # 引用的消息
    me: bool = False
    type: str = "text"
    mime: str = "text/plain"
    caption: str = ""
    status: MessageStatus = MessageStatus.PENDING
    starred: bool = False
    forwarded: bool = False
    created_at: int = 0
    deleted_at: Optional[int] = None
    edited: bool = False
    body: Dict[str, Any] = field(default_factory=dict)  # protocol message body

    @property
    def is_media(self) -> bool:
        return self.type in MEDIA_TYPES

    @property
    def key(self) -> Dict[str, Any]:
        key = {"remoteJid": self.cid, "id": self.id, "fromMe": self.me}
        if self.uid and self.uid != self.cid:
            key["participant"] = self.uid
        return key

    def apply_body(self, body: Dict[str, Any]) -> None:
        """Refresh every field derived from the protocol body"""
        self.body = body
        content_type = content_type_of(body)
        self.type = MESSAGE_TYPE_MAP.get(content_type or "", "text")
        self.caption = caption_of(body)
        self.mime = mime_of(self.type, body)
        context = context_info_of(body)
        self.forwarded = bool(context.get("isForwarded", False))
        self.mid = context.get("stanzaId") or None
        expiration = context.get("expiration")
        self.deleted_at = self.created_at + int(expiration) if expiration else None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = int(self.status)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        return cls(
            id=data["id"],
            cid=data["cid"],
            uid=data.get("uid"),
            mid=data.get("mid"),
            me=bool(data.get("me", False)),
            type=data.get("type") or "text",
            mime=data.get("mime") or "text/plain",
            caption=data.get("caption") or "",
            status=MessageStatus.coerce(data.get("status")),
            starred=bool(data.get("starred", False)),
            forwarded=bool(data.get("forwarded", False)),
            created_at=int(data.get("created_at") or 0),
            deleted_at=data.get("deleted_at"),
            edited=bool(data.get("edited", False)),
            body=dict(data.get("body") or {}),
        )


def mime_of(message_type: str, body: Optional[Dict[str, Any]]) -> str:
    if message_type == "text":
        return "text/plain"
    if message_type in ("location", "poll"):
        return "application/json"
    content_type = content_type_of(body)
    inner = body.get(content_type) if body and content_type else None
    if isinstance(inner, dict) and inner.get("mimetype"):
        return inner["mimetype"]
    return "application/octet-stream"
