"""
Filesystem engine (reference backend).

Each key is a directory holding an ``index`` file with the value, so a key can
be both a document and the namespace of its children::

    <base>/chat/123_at_s.whatsapp.net/index
    <base>/chat/123_at_s.whatsapp.net/messages/index
    <base>/chat/123_at_s.whatsapp.net/message/ABC/index
    <base>/chat/123_at_s.whatsapp.net/message/ABC/content/index

Listing order comes from the ``index`` file modification time. Writes stamp
that time from a strictly increasing clock so ordering survives coarse
filesystem timestamps.
"""

import asyncio
import os
import re
import shutil
import tempfile
import threading
import time
from pathlib import Path
from typing import List, Optional

from whatsapp_manager.core.engine import Engine, StorageUnavailableError

INDEX_FILE = "index"
_ESCAPED = re.compile(r"__|_at_")


class FileEngine(Engine):
    def __init__(self, base_path: str = ".whatsapp/default"):
        self.base_path = Path(base_path)
        self._clock_lock = threading.Lock()
        self._last_stamp = 0

    @staticmethod
    def _clean_key(key: str) -> str:
        # literal underscores are doubled so "_at_" always means "@"
        return key.replace("_", "__").replace("@", "_at_")

    @staticmethod
    def _restore_key(name: str) -> str:
        return _ESCAPED.sub(lambda m: "_" if m.group() == "__" else "@", name)

    def _dir(self, key: str) -> Path:
        parts = [p for p in self._clean_key(key).split("/") if p]
        if any(p in (".", "..") for p in parts):
            raise ValueError(f"Invalid storage key: {key}")
        return self.base_path.joinpath(*parts)

    def _next_stamp(self) -> int:
        with self._clock_lock:
            self._last_stamp = max(time.time_ns(), self._last_stamp + 1)
            return self._last_stamp

    # ------------------------------------------------------------------
    # blocking implementations, run in a worker thread
    # ------------------------------------------------------------------

    def _read(self, key: str) -> Optional[str]:
        try:
            return (self._dir(key) / INDEX_FILE).read_text(encoding="utf-8")
        except (FileNotFoundError, NotADirectoryError):
            return None
        except OSError as e:
            raise StorageUnavailableError(f"Failed to read {key}: {e}")

    def _write(self, key: str, value: Optional[str]) -> bool:
        directory = self._dir(key)
        index_path = directory / INDEX_FILE
        try:
            if value is None:
                index_path.unlink(missing_ok=True)
                try:
                    directory.rmdir()
                except OSError:
                    pass  # still holds children
                return True

            if self._read(key) == value:
                return True

            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=str(directory), prefix=".tmp-")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(value)
                stamp = self._next_stamp()
                os.utime(tmp_path, ns=(stamp, stamp))
                os.replace(tmp_path, index_path)
            except BaseException:
                Path(tmp_path).unlink(missing_ok=True)
                raise
            return True
        except (OSError, StorageUnavailableError):
            return False

    def _list(self, prefix: str, offset: int, limit: int) -> List[str]:
        namespace = prefix.strip("/")
        directory = self._dir(namespace) if namespace else self.base_path
        items = []
        try:
            children = list(os.scandir(directory))
        except (FileNotFoundError, NotADirectoryError):
            return []
        except OSError as e:
            raise StorageUnavailableError(f"Failed to list {prefix}: {e}")

        for entry in children:
            if not entry.is_dir():
                continue
            try:
                mtime = os.stat(os.path.join(entry.path, INDEX_FILE)).st_mtime_ns
            except OSError:
                continue  # namespace only, no document
            key = self._restore_key(entry.name)
            items.append((mtime, f"{namespace}/{key}" if namespace else key))

        items.sort(key=lambda item: (-item[0], item[1]))
        return [key for _, key in items[offset : offset + limit]]

    def _delete_prefix(self, prefix: str) -> bool:
        try:
            shutil.rmtree(self._dir(prefix))
            return True
        except FileNotFoundError:
            return True
        except OSError:
            return False

    # ------------------------------------------------------------------
    # Engine contract
    # ------------------------------------------------------------------

    async def get(self, key: str) -> Optional[str]:
        return await asyncio.to_thread(self._read, key)

    async def set(self, key: str, value: Optional[str]) -> bool:
        return await asyncio.to_thread(self._write, key, value)

    async def list(self, prefix: str, offset: int = 0, limit: int = 50) -> List[str]:
        return await asyncio.to_thread(self._list, prefix, offset, limit)

    async def delete_prefix(self, prefix: str) -> bool:
        return await asyncio.to_thread(self._delete_prefix, prefix)
