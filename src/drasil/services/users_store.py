from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import aiosqlite

from ..constants import REPUTATION_DEFAULT
from .base import BaseStore, from_iso, to_iso


@dataclass(frozen=True)
class UserRecord:
    id: str
    username: Optional[str]
    discriminator: Optional[str]
    account_created_at: Optional[datetime]
    global_reputation_score: Optional[float]
    created_at: datetime


@dataclass(frozen=True)
class MemberRecord:
    server_id: str
    user_id: str
    join_date: Optional[datetime]
    reputation_score: float
    is_restricted: bool


class UsersStore(BaseStore):
    """users, server_members and both reputation scopes."""

    async def _create_tables(self, db: aiosqlite.Connection) -> None:
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                username TEXT NULL,
                discriminator TEXT NULL,
                account_created_at TEXT NULL,
                global_reputation_score REAL NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        await db.execute(
            f"""
            CREATE TABLE IF NOT EXISTS server_members (
                server_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                join_date TEXT NULL,
                reputation_score REAL NOT NULL DEFAULT {REPUTATION_DEFAULT},
                is_restricted INTEGER NOT NULL DEFAULT 0,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (server_id, user_id)
            )
            """
        )
        await db.execute("CREATE INDEX IF NOT EXISTS idx_members_user ON server_members (user_id)")

    def _user_from_row(self, row: aiosqlite.Row) -> UserRecord:
        score = row["global_reputation_score"]
        return UserRecord(
            id=str(row["id"]),
            username=row["username"],
            discriminator=row["discriminator"],
            account_created_at=from_iso(row["account_created_at"]),
            global_reputation_score=float(score) if score is not None else None,
            created_at=from_iso(row["created_at"]),
        )

    def _member_from_row(self, row: aiosqlite.Row) -> MemberRecord:
        return MemberRecord(
            server_id=str(row["server_id"]),
            user_id=str(row["user_id"]),
            join_date=from_iso(row["join_date"]),
            reputation_score=float(row["reputation_score"]),
            is_restricted=bool(row["is_restricted"]),
        )

    async def find_user_by_id(self, user_id: str) -> Optional[UserRecord]:
        async with self._connect() as db:
            async with db.execute("SELECT * FROM users WHERE id = ?", (str(user_id),)) as cur:
                row = await cur.fetchone()
        return self._user_from_row(row) if row else None

    async def ensure_user(
        self,
        user_id: str,
        username: Optional[str] = None,
        account_created_at: Optional[datetime] = None,
        discriminator: Optional[str] = None,
    ) -> UserRecord:
        now = to_iso(datetime.now(timezone.utc))
        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO users (id, username, discriminator, account_created_at, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    username = COALESCE(excluded.username, users.username),
                    discriminator = COALESCE(excluded.discriminator, users.discriminator),
                    account_created_at = COALESCE(excluded.account_created_at, users.account_created_at),
                    updated_at = excluded.updated_at
                """,
                (str(user_id), username, discriminator, to_iso(account_created_at), now, now),
            )
            await db.commit()
            async with db.execute("SELECT * FROM users WHERE id = ?", (str(user_id),)) as cur:
                row = await cur.fetchone()
        return self._user_from_row(row)

    async def find_member(self, server_id: str, user_id: str) -> Optional[MemberRecord]:
        async with self._connect() as db:
            async with db.execute(
                "SELECT * FROM server_members WHERE server_id = ? AND user_id = ?",
                (str(server_id), str(user_id)),
            ) as cur:
                row = await cur.fetchone()
        return self._member_from_row(row) if row else None

    async def ensure_member(self, server_id: str, user_id: str, join_date: Optional[datetime] = None) -> MemberRecord:
        now = to_iso(datetime.now(timezone.utc))
        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO server_members (server_id, user_id, join_date, updated_at) VALUES (?, ?, ?, ?)
                ON CONFLICT(server_id, user_id) DO UPDATE SET
                    join_date = COALESCE(server_members.join_date, excluded.join_date)
                """,
                (str(server_id), str(user_id), to_iso(join_date), now),
            )
            await db.commit()
            async with db.execute(
                "SELECT * FROM server_members WHERE server_id = ? AND user_id = ?",
                (str(server_id), str(user_id)),
            ) as cur:
                row = await cur.fetchone()
        return self._member_from_row(row)

    async def set_restricted(self, server_id: str, user_id: str, restricted: bool) -> None:
        async with self._connect() as db:
            await db.execute(
                "UPDATE server_members SET is_restricted = ?, updated_at = ? WHERE server_id = ? AND user_id = ?",
                (int(restricted), to_iso(datetime.now(timezone.utc)), str(server_id), str(user_id)),
            )
            await db.commit()

    async def update_reputation_score(self, user_id: str, score: float, server_id: Optional[str] = None) -> None:
        """Write a per-server score, or the global one when ``server_id`` is None."""
        now = to_iso(datetime.now(timezone.utc))
        async with self._connect() as db:
            if server_id is None:
                await db.execute(
                    "UPDATE users SET global_reputation_score = ?, updated_at = ? WHERE id = ?",
                    (float(score), now, str(user_id)),
                )
            else:
                await db.execute(
                    """
                    INSERT INTO server_members (server_id, user_id, reputation_score, updated_at) VALUES (?, ?, ?, ?)
                    ON CONFLICT(server_id, user_id) DO UPDATE SET
                        reputation_score = excluded.reputation_score,
                        updated_at = excluded.updated_at
                    """,
                    (str(server_id), str(user_id), float(score), now),
                )
            await db.commit()

    async def list_member_scores(self, user_id: str) -> list[float]:
        async with self._connect() as db:
            async with db.execute(
                "SELECT reputation_score FROM server_members WHERE user_id = ? ORDER BY server_id",
                (str(user_id),),
            ) as cur:
                rows = await cur.fetchall()
        return [float(r[0]) for r in rows]
