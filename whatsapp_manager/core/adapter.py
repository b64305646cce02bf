"""
Protocol adapter interface.

The real-time session is an external collaborator. The manager only needs
something that emits the raw event vocabulary and accepts the commands below,
so tests drive it with a fake that records calls.
"""

from typing import Any, Callable, Dict, List, Optional, Protocol

SESSION_EVENTS = (
    "connection.update",
    "messaging-history.set",
    "contacts.upsert",
    "contacts.update",
    "chats.upsert",
    "chats.update",
    "chats.delete",
    "messages.upsert",
    "messages.update",
    "messages.delete",
    "messages.reaction",
)


class SessionTerminatedError(Exception):
    """会话已被注销, 需要重新配对"""

    pass


class ProtocolAdapter(Protocol):
    """Session capabilities consumed by the manager

    Poll votes arrive on the wire as an encrypted protobuf ``PollVoteMessage``.
    The adapter must deliver ``pollUpdateMessage.vote`` with an ``encPayload``
    whose plaintext is the JSON ``{"selectedOptions": [<sha256 hex>, ...]}``,
    i.e. it decrypts the protobuf vote and re-encrypts it as JSON with
    ``poll.encrypt_poll_vote`` before emitting ``messages.upsert``.
    """

    @property
    def me_id(self) -> Optional[str]:
        """Jid of the logged in account, None before pairing"""
        ...

    def on(self, event: str, listener: Callable[[Any], Any]) -> None:
        """Subscribe to a raw session event"""
        ...

    async def send_message(
        self, cid: str, content: Dict[str, Any], quoted: Optional[Dict[str, Any]] = None
    ) -> Optional[Dict[str, Any]]:
        """Send a message and return the raw message that was sent"""
        ...

    async def read_messages(self, keys: List[Dict[str, Any]]) -> None:
        ...

    async def download_media(self, message: Dict[str, Any]) -> bytes:
        ...

    async def group_metadata(self, cid: str) -> Dict[str, Any]:
        ...

    async def chat_modify(self, cid: str, modification: Dict[str, Any]) -> None:
        ...

    async def group_leave(self, cid: str) -> None:
        ...

    async def profile_picture_url(self, jid: str) -> Optional[str]:
        ...

    async def fetch_status(self, jid: str) -> Optional[str]:
        ...
