"""
Message ordering index.

Engines have no range queries, so every conversation keeps one compact record
at ``chat/{cid}/messages``: a JSON list of ``[timestamp, mid]`` pairs sorted
newest first. Pagination reads that single record instead of scanning keys.

Each ``add``/``remove`` is a read-modify-write of that record and runs under
the conversation's ``index:`` lock, so concurrent handlers cannot drop or
duplicate entries.
"""

import bisect
import json
from typing import List, Optional, Tuple

from whatsapp_manager.core.engine import Engine
from whatsapp_manager.core.locks import KeyedLock
from whatsapp_manager.core.log import get_logger

logger = get_logger(__name__)

Entry = Tuple[int, str]


def index_key(cid: str) -> str:
    return f"chat/{cid}/messages"


class MessageIndex:
    """Per-conversation list of message ids, newest first"""

    def __init__(self, engine: Engine, locks: Optional[KeyedLock] = None):
        self.engine = engine
        self.locks = locks or KeyedLock()

    async def _load(self, cid: str) -> List[Entry]:
        raw = await self.engine.get(index_key(cid))
        if not raw:
            return []
        try:
            return [(int(ts), str(mid)) for ts, mid in json.loads(raw)]
        except (ValueError, TypeError) as e:
            logger.warning(f"Discarding corrupted ordering index for {cid}: {e}")
            return []

    async def _save(self, cid: str, entries: List[Entry]) -> bool:
        if not entries:
            return await self.engine.set(index_key(cid), None)
        return await self.engine.set(
            index_key(cid), json.dumps([[ts, mid] for ts, mid in entries])
        )

    async def add(self, cid: str, mid: str, timestamp: int) -> bool:
        """Insert ``mid`` keeping newest-first order

        An existing entry for ``mid`` is replaced, never duplicated. Among
        equal timestamps the new entry goes after the ones already stored, so
        reads of unchanged data are stable.
        """
        async with self.locks.hold(f"index:{cid}"):
            entries = [e for e in await self._load(cid) if e[1] != mid]
            negated = [-ts for ts, _ in entries]
            position = bisect.bisect_right(negated, -int(timestamp))
            entries.insert(position, (int(timestamp), mid))
            return await self._save(cid, entries)

    async def remove(self, cid: str, mid: str) -> bool:
        """Drop every entry whose id is ``mid``"""
        async with self.locks.hold(f"index:{cid}"):
            entries = await self._load(cid)
            kept = [e for e in entries if e[1] != mid]
            if len(kept) == len(entries):
                return True
            return await self._save(cid, kept)

    async def clear(self, cid: str) -> bool:
        async with self.locks.hold(f"index:{cid}"):
            return await self.engine.set(index_key(cid), None)

    async def paginate(self, cid: str, offset: int = 0, limit: int = 20) -> List[str]:
        if offset < 0 or limit <= 0:
            return []
        entries = await self._load(cid)
        return [mid for _, mid in entries[offset : offset + limit]]

    async def count(self, cid: str) -> int:
        return len(await self._load(cid))

    async def contains(self, cid: str, mid: str) -> bool:
        return any(entry_mid == mid for _, entry_mid in await self._load(cid))
