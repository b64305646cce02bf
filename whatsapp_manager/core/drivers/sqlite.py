"""
SQLite engine with optional encryption at rest.

All keys live in one ``documents`` table. Listing order comes from a
``modified`` counter bumped on every effective write, and ``delete_prefix``
runs inside a single transaction so a cascade is never half applied.

When a password is given, values are sealed with AES-256-GCM under a key
derived with PBKDF2-SHA256; the salt is kept next to the database.
"""

import asyncio
import os
import sqlite3
import threading
from pathlib import Path
from typing import List, Optional

from Crypto.Cipher import AES
from Crypto.Hash import SHA256
from Crypto.Protocol.KDF import PBKDF2

from whatsapp_manager.core.engine import (
    Engine,
    StorageUnavailableError,
    is_under,
    parent_of,
)


class SQLiteEngine(Engine):
    PBKDF2_ITERATIONS = 100000
    KEY_LENGTH = 32
    NONCE_SIZE = 12
    TAG_SIZE = 16

    def __init__(self, storage_path: str, password: Optional[str] = None):
        self.storage_path = Path(storage_path)
        self.db_path = self.storage_path / "store.db"
        self._key = self._derive_key(password) if password else None
        self._lock = threading.Lock()
        self._ensure_storage_exists()
        self._modified = self._load_modified()

    def _derive_key(self, password: str) -> bytes:
        salt_path = self.storage_path / ".salt"
        if salt_path.exists():
            salt = salt_path.read_bytes()
        else:
            salt = os.urandom(16)
            self.storage_path.mkdir(parents=True, exist_ok=True)
            salt_path.write_bytes(salt)
        return PBKDF2(
            password,
            salt,
            dkLen=self.KEY_LENGTH,
            count=self.PBKDF2_ITERATIONS,
            hmac_hash_module=SHA256,
        )

    def _ensure_storage_exists(self):
        self.storage_path.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.db_path))
        try:
            cursor = conn.cursor()
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS documents (
                    key TEXT PRIMARY KEY,
                    parent TEXT NOT NULL,
                    value BLOB NOT NULL,
                    modified INTEGER NOT NULL
                )
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_documents_parent
                ON documents(parent, modified)
            """)
            conn.commit()
        finally:
            conn.close()

    def _get_connection(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self.db_path))

    def _load_modified(self) -> int:
        conn = self._get_connection()
        try:
            row = conn.execute("SELECT MAX(modified) FROM documents").fetchone()
            return int(row[0] or 0)
        finally:
            conn.close()

    def _seal(self, value: str) -> bytes:
        data = value.encode("utf-8")
        if self._key is None:
            return data
        nonce = os.urandom(self.NONCE_SIZE)
        cipher = AES.new(self._key, AES.MODE_GCM, nonce=nonce)
        ciphertext, tag = cipher.encrypt_and_digest(data)
        return nonce + tag + ciphertext

    def _open(self, blob: bytes) -> str:
        if self._key is None:
            return bytes(blob).decode("utf-8")
        nonce = blob[: self.NONCE_SIZE]
        tag = blob[self.NONCE_SIZE : self.NONCE_SIZE + self.TAG_SIZE]
        ciphertext = blob[self.NONCE_SIZE + self.TAG_SIZE :]
        cipher = AES.new(self._key, AES.MODE_GCM, nonce=nonce)
        try:
            return cipher.decrypt_and_verify(ciphertext, tag).decode("utf-8")
        except ValueError as e:
            raise StorageUnavailableError(f"Stored value failed authentication: {e}")

    # ------------------------------------------------------------------
    # blocking implementations, run in a worker thread
    # ------------------------------------------------------------------

    def _read(self, key: str) -> Optional[str]:
        conn = self._get_connection()
        try:
            row = conn.execute(
                "SELECT value FROM documents WHERE key = ?", (key,)
            ).fetchone()
            return self._open(row[0]) if row else None
        except sqlite3.Error as e:
            raise StorageUnavailableError(f"Failed to read {key}: {e}")
        finally:
            conn.close()

    def _write(self, key: str, value: Optional[str]) -> bool:
        with self._lock:
            conn = self._get_connection()
            try:
                cursor = conn.cursor()
                if value is None:
                    cursor.execute("DELETE FROM documents WHERE key = ?", (key,))
                    conn.commit()
                    return True

                row = cursor.execute(
                    "SELECT value FROM documents WHERE key = ?", (key,)
                ).fetchone()
                if row and self._open(row[0]) == value:
                    return True

                self._modified += 1
                cursor.execute(
                    """
                    INSERT OR REPLACE INTO documents (key, parent, value, modified)
                    VALUES (?, ?, ?, ?)
                """,
                    (key, parent_of(key), self._seal(value), self._modified),
                )
                conn.commit()
                return True
            except (sqlite3.Error, StorageUnavailableError):
                return False
            finally:
                conn.close()

    def _list(self, prefix: str, offset: int, limit: int) -> List[str]:
        conn = self._get_connection()
        try:
            rows = conn.execute(
                """
                SELECT key FROM documents
                WHERE parent = ?
                ORDER BY modified DESC, key ASC
                LIMIT ? OFFSET ?
            """,
                (prefix.strip("/"), limit, offset),
            ).fetchall()
            return [row[0] for row in rows]
        except sqlite3.Error as e:
            raise StorageUnavailableError(f"Failed to list {prefix}: {e}")
        finally:
            conn.close()

    def _delete_prefix(self, prefix: str) -> bool:
        with self._lock:
            conn = self._get_connection()
            try:
                keys = [
                    row[0]
                    for row in conn.execute(
                        "SELECT key FROM documents WHERE key = ? OR key LIKE ? ESCAPE '\\'",
                        (prefix, self._escape_like(prefix.rstrip("/")) + "/%"),
                    ).fetchall()
                    if is_under(row[0], prefix)
                ]
                conn.executemany(
                    "DELETE FROM documents WHERE key = ?", [(k,) for k in keys]
                )
                conn.commit()
                return True
            except sqlite3.Error:
                conn.rollback()
                return False
            finally:
                conn.close()

    @staticmethod
    def _escape_like(value: str) -> str:
        return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")

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
