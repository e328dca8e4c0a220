from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

import aiosqlite

from ..errors import CaseConflictError, ValidationError
from ..moderation.models import VerificationEvent, VerificationStatus
from .base import BaseStore, dump_json, from_iso, load_json, new_id, to_iso

_COLUMNS = (
    "id, server_id, user_id, detection_event_id, status, thread_id, notification_message_id, "
    "created_at, updated_at, resolved_at, resolved_by, notes, metadata_json"
)


class VerificationEventsStore(BaseStore):
    """verification_events; at most one pending row per (server, user) is enforced by index."""

    async def _create_tables(self, db: aiosqlite.Connection) -> None:
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS verification_events (
                id TEXT PRIMARY KEY,
                server_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                detection_event_id TEXT NULL,
                status TEXT NOT NULL,
                thread_id TEXT NULL,
                notification_message_id TEXT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                resolved_at TEXT NULL,
                resolved_by TEXT NULL,
                notes TEXT NULL,
                metadata_json TEXT NOT NULL DEFAULT '{}'
            )
            """
        )
        await db.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS uq_verification_one_pending
            ON verification_events (server_id, user_id) WHERE status = 'pending'
            """
        )
        await db.execute(
            "CREATE INDEX IF NOT EXISTS idx_verification_server_user ON verification_events (server_id, user_id, created_at)"
        )

    def _from_row(self, row: aiosqlite.Row) -> VerificationEvent:
        return VerificationEvent(
            id=str(row["id"]),
            server_id=str(row["server_id"]),
            user_id=str(row["user_id"]),
            status=VerificationStatus(row["status"]),
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
            detection_event_id=row["detection_event_id"],
            thread_id=row["thread_id"],
            notification_message_id=row["notification_message_id"],
            resolved_at=from_iso(row["resolved_at"]),
            resolved_by=row["resolved_by"],
            notes=row["notes"],
            metadata=load_json(row["metadata_json"], {}),
        )

    async def create_verification_event(
        self,
        server_id: str,
        user_id: str,
        detection_event_id: Optional[str] = None,
        notes: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> VerificationEvent:
        if not server_id or not user_id:
            raise ValidationError("server_id and user_id are required for a verification event")
        now = datetime.now(timezone.utc)
        event = VerificationEvent(
            id=new_id(),
            server_id=str(server_id),
            user_id=str(user_id),
            status=VerificationStatus.PENDING,
            created_at=now,
            updated_at=now,
            detection_event_id=detection_event_id,
            notes=notes,
            metadata=dict(metadata or {}),
        )
        await self._insert(event)
        return event

    async def _insert(self, event: VerificationEvent) -> None:
        params = (
            event.id,
            event.server_id,
            event.user_id,
            event.detection_event_id,
            event.status.value,
            event.thread_id,
            event.notification_message_id,
            to_iso(event.created_at),
            to_iso(event.updated_at),
            to_iso(event.resolved_at),
            event.resolved_by,
            event.notes,
            dump_json(event.metadata),
        )
        async with self._connect() as db:
            try:
                await db.execute(
                    f"INSERT INTO verification_events ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    params,
                )
                await db.commit()
            except aiosqlite.IntegrityError as e:
                if "verification_events.server_id" in str(e):
                    raise CaseConflictError(event.server_id, event.user_id) from e
                raise

    async def update_status(
        self,
        event: VerificationEvent,
        expected: VerificationStatus,
    ) -> Optional[VerificationEvent]:
        """Move a case from ``expected`` to ``event.status``.

        Only the status, resolution, notes and updated_at columns are written, so
        thread and notification references stored meanwhile survive. Returns the
        fresh row, or None when the case is no longer in ``expected``. Raises
        CaseConflictError if the move would create a second pending case.
        """
        async with self._connect() as db:
            try:
                cur = await db.execute(
                    """
                    UPDATE verification_events
                    SET status = ?, resolved_at = ?, resolved_by = ?, notes = ?, updated_at = ?
                    WHERE id = ? AND status = ?
                    """,
                    (
                        event.status.value,
                        to_iso(event.resolved_at),
                        event.resolved_by,
                        event.notes,
                        to_iso(event.updated_at),
                        event.id,
                        expected.value,
                    ),
                )
                await db.commit()
            except aiosqlite.IntegrityError as e:
                if "verification_events.server_id" in str(e):
                    raise CaseConflictError(event.server_id, event.user_id) from e
                raise
            if cur.rowcount == 0:
                return None
            async with db.execute(f"SELECT {_COLUMNS} FROM verification_events WHERE id = ?", (event.id,)) as rows:
                row = await rows.fetchone()
        return self._from_row(row) if row else None

    async def find_by_id(self, verification_event_id: str) -> Optional[VerificationEvent]:
        async with self._connect() as db:
            async with db.execute(
                f"SELECT {_COLUMNS} FROM verification_events WHERE id = ?", (str(verification_event_id),)
            ) as cur:
                row = await cur.fetchone()
        return self._from_row(row) if row else None

    async def find_active_verification_event(self, server_id: str, user_id: str) -> Optional[VerificationEvent]:
        async with self._connect() as db:
            async with db.execute(
                f"""
                SELECT {_COLUMNS} FROM verification_events
                WHERE server_id = ? AND user_id = ? AND status = 'pending'
                ORDER BY created_at DESC LIMIT 1
                """,
                (str(server_id), str(user_id)),
            ) as cur:
                row = await cur.fetchone()
        return self._from_row(row) if row else None

    async def find_latest_verification_event(self, server_id: str, user_id: str) -> Optional[VerificationEvent]:
        async with self._connect() as db:
            async with db.execute(
                f"""
                SELECT {_COLUMNS} FROM verification_events
                WHERE server_id = ? AND user_id = ?
                ORDER BY created_at DESC LIMIT 1
                """,
                (str(server_id), str(user_id)),
            ) as cur:
                row = await cur.fetchone()
        return self._from_row(row) if row else None

    async def find_verification_events_by_server_and_user(
        self, server_id: str, user_id: str, limit: int = 25
    ) -> list[VerificationEvent]:
        """Case history, newest first."""
        async with self._connect() as db:
            async with db.execute(
                f"""
                SELECT {_COLUMNS} FROM verification_events
                WHERE server_id = ? AND user_id = ?
                ORDER BY created_at DESC LIMIT ?
                """,
                (str(server_id), str(user_id), max(1, int(limit))),
            ) as cur:
                rows = await cur.fetchall()
        return [self._from_row(r) for r in rows]

    async def attach_thread(self, verification_event_id: str, thread_id: str) -> None:
        async with self._connect() as db:
            await db.execute(
                "UPDATE verification_events SET thread_id = ?, updated_at = ? WHERE id = ?",
                (str(thread_id), to_iso(datetime.now(timezone.utc)), str(verification_event_id)),
            )
            await db.commit()

    async def set_notification_message(self, verification_event_id: str, message_id: str) -> None:
        async with self._connect() as db:
            await db.execute(
                "UPDATE verification_events SET notification_message_id = ?, updated_at = ? WHERE id = ?",
                (str(message_id), to_iso(datetime.now(timezone.utc)), str(verification_event_id)),
            )
            await db.commit()
