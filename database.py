from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import aiosqlite

from config import DEFAULT_DB_PATH

# Author: Daniel Neugent


@dataclass
class UserRecord:
    id: int
    handle: str
    api_key_hash: str
    email: Optional[str]
    created_at: str


@dataclass
class PhotoRecord:
    id: int
    name: str
    cid: str
    user_id: int
    size: int
    created_at: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


USER_COLUMNS = "id, handle, api_key_hash, email, created_at"
PHOTO_COLUMNS = "id, name, cid, user_id, size, created_at"


class Database:
    """Lightweight wrapper around aiosqlite for user and photo persistence."""

    def __init__(self, db_path: Path = DEFAULT_DB_PATH) -> None:
        self.db_path = Path(db_path)

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[aiosqlite.Connection]:
        """Open a connection with foreign-key support enabled."""
        async with aiosqlite.connect(self.db_path) as conn:
            conn.row_factory = aiosqlite.Row
            await conn.execute("PRAGMA foreign_keys = ON;")
            yield conn

    async def initialize(self) -> None:
        """Create directories and ensure both tables exist."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        async with self._connection() as conn:
            await conn.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    handle TEXT NOT NULL UNIQUE,
                    api_key_hash TEXT NOT NULL UNIQUE,
                    email TEXT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            # Photos outlive their owner: no ON DELETE CASCADE.
            await conn.execute(
                """
                CREATE TABLE IF NOT EXISTS photos (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    cid TEXT NOT NULL,
                    user_id INTEGER NOT NULL,
                    size INTEGER NOT NULL,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (user_id) REFERENCES users(id)
                )
                """
            )
            await conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_photos_cid ON photos(cid)"
            )
            await conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_photos_user_id ON photos(user_id)"
            )
            await conn.commit()

    async def fetch_one(
        self, query: str, params: Sequence[Any]
    ) -> Optional[aiosqlite.Row]:
        """Execute a single-row SELECT statement with given parameters."""
        async with self._connection() as conn:
            cursor = await conn.execute(query, params)
            row = await cursor.fetchone()
            await cursor.close()
            return row

    async def fetch_all(
        self, query: str, params: Sequence[Any]
    ) -> List[aiosqlite.Row]:
        async with self._connection() as conn:
            cursor = await conn.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()
            return list(rows)

    async def create_user(
        self, handle: str, api_key_hash: str, email: Optional[str] = None
    ) -> UserRecord:
        """Insert a new user; duplicate handles raise ``aiosqlite.IntegrityError``."""
        created_at = datetime.now(timezone.utc).isoformat()
        async with self._connection() as conn:
            cursor = await conn.execute(
                """
                INSERT INTO users (handle, api_key_hash, email, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (handle, api_key_hash, email, created_at),
            )
            await conn.commit()
            lastrowid = cursor.lastrowid
        if lastrowid is None:
            raise RuntimeError("Failed to read the inserted user ID.")
        return UserRecord(
            id=int(lastrowid),
            handle=handle,
            api_key_hash=api_key_hash,
            email=email,
            created_at=created_at,
        )

    async def fetch_user_by_api_key_hash(self, api_key_hash: str) -> Optional[UserRecord]:
        """Resolve a hashed bearer key to its owner."""
        row = await self.fetch_one(
            f"SELECT {USER_COLUMNS} FROM users WHERE api_key_hash = ?",
            (api_key_hash,),
        )
        return UserRecord(**row) if row else None

    async def fetch_user_by_id(self, user_id: int) -> Optional[UserRecord]:
        row = await self.fetch_one(
            f"SELECT {USER_COLUMNS} FROM users WHERE id = ?",
            (user_id,),
        )
        return UserRecord(**row) if row else None

    async def create_photo(
        self, *, name: str, cid: str, user_id: int, size: int
    ) -> PhotoRecord:
        """Insert photo metadata and return the constructed dataclass."""
        created_at = datetime.now(timezone.utc).isoformat()
        async with self._connection() as conn:
            cursor = await conn.execute(
                """
                INSERT INTO photos (name, cid, user_id, size, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (name, cid, user_id, size, created_at),
            )
            await conn.commit()
            lastrowid = cursor.lastrowid
        if lastrowid is None:
            raise RuntimeError("Failed to read the inserted photo ID.")
        return PhotoRecord(
            id=int(lastrowid),
            name=name,
            cid=cid,
            user_id=user_id,
            size=size,
            created_at=created_at,
        )

    async def fetch_photo_by_cid(self, cid: str) -> Optional[PhotoRecord]:
        """Return the earliest photo stored under ``cid``."""
        row = await self.fetch_one(
            f"SELECT {PHOTO_COLUMNS} FROM photos WHERE cid = ? ORDER BY id ASC LIMIT 1",
            (cid,),
        )
        return PhotoRecord(**row) if row else None

    async def list_photos_for_user(self, user_id: int) -> List[PhotoRecord]:
        """List a user's photos, newest first."""
        rows = await self.fetch_all(
            f"SELECT {PHOTO_COLUMNS} FROM photos WHERE user_id = ? ORDER BY id DESC",
            (user_id,),
        )
        return [PhotoRecord(**row) for row in rows]
