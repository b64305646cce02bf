"""
Storage engine contract.

Every backend stores plain strings under hierarchical ``/``-separated keys
(``contact/{id}``, ``chat/{cid}/message/{mid}``, ...). Serialization is the
caller's concern. Engines only guarantee the behaviour described on each
method, so any of them can sit behind the store without changes to the
reconciliation logic.
"""

from abc import ABC, abstractmethod
from typing import List, Optional


class StorageUnavailableError(Exception):
    """Raised when the backing medium cannot be read"""

    pass


def parent_of(key: str) -> str:
    """Return the namespace a key is listed under (``chat/x`` → ``chat``)"""
    return key.rsplit("/", 1)[0] if "/" in key else ""


def is_under(key: str, prefix: str) -> bool:
    return key == prefix or key.startswith(prefix.rstrip("/") + "/")


class Engine(ABC):
    """Minimal key-value capability required by the store"""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Return the last written value, or None when absent

        Raises:
            StorageUnavailableError: The backend could not be read
        """

    @abstractmethod
    async def set(self, key: str, value: Optional[str]) -> bool:
        """Upsert a value; ``None`` deletes the key (children are kept)

        Writing the value already stored must not change anything observable,
        including the key's position in ``list``.

        Returns:
            True on success, False if the write did not happen
        """

    @abstractmethod
    async def list(self, prefix: str, offset: int = 0, limit: int = 50) -> List[str]:
        """List the keys directly under ``prefix``, most recently modified first

        Only one level is listed: ``list("chat")`` returns ``chat/{id}`` keys
        but not ``chat/{id}/message/{mid}``. Ties are broken by key so repeated
        calls over unchanged data return the same slice.
        """

    @abstractmethod
    async def delete_prefix(self, prefix: str) -> bool:
        """Remove ``prefix`` itself and every key below it

        Returns:
            True on success, False if the backend could not be modified
        """

    async def close(self) -> None:
        """Release backend resources"""
        return None
