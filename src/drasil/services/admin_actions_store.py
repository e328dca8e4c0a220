from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

import aiosqlite

from ..moderation.models import AdminAction, AdminActionData, AdminActionType, VerificationStatus
from .base import BaseStore, dump_json, from_iso, load_json, new_id, to_iso


def _status(raw: Optional[str]) -> Optional[VerificationStatus]:
    return VerificationStatus(raw) if raw else None


class AdminActionsStore(BaseStore):
    """Append-only audit rows; there is no update or delete."""

    async def _create_tables(self, db: aiosqlite.Connection) -> None:
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS admin_actions (
                id TEXT PRIMARY KEY,
                server_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                admin_id TEXT NOT NULL,
                verification_event_id TEXT NULL,
                detection_event_id TEXT NULL,
                action_type TEXT NOT NULL,
                action_at TEXT NOT NULL,
                previous_status TEXT NULL,
                new_status TEXT NULL,
                notes TEXT NULL,
                metadata_json TEXT NOT NULL DEFAULT '{}'
            )
            """
        )
        await db.execute("CREATE INDEX IF NOT EXISTS idx_admin_actions_user ON admin_actions (server_id, user_id, action_at)")
        await db.execute("CREATE INDEX IF NOT EXISTS idx_admin_actions_admin ON admin_actions (admin_id, action_at)")
        await db.execute(
            "CREATE INDEX IF NOT EXISTS idx_admin_actions_case ON admin_actions (verification_event_id, action_at)"
        )

    def _from_row(self, row: aiosqlite.Row) -> AdminAction:
        return AdminAction(
            id=str(row["id"]),
            server_id=str(row["server_id"]),
            user_id=str(row["user_id"]),
            admin_id=str(row["admin_id"]),
            action_type=AdminActionType(row["action_type"]),
            action_at=from_iso(row["action_at"]),
            verification_event_id=row["verification_event_id"],
            detection_event_id=row["detection_event_id"],
            previous_status=_status(row["previous_status"]),
            new_status=_status(row["new_status"]),
            notes=row["notes"],
            metadata=load_json(row["metadata_json"], {}),
        )

    async def create_admin_action(self, data: AdminActionData, action_at: Optional[datetime] = None) -> AdminAction:
        action = AdminAction(
            id=new_id(),
            server_id=str(data.server_id),
            user_id=str(data.user_id),
            admin_id=str(data.admin_id),
            action_type=AdminActionType(data.action_type),
            action_at=action_at or datetime.now(timezone.utc),
            verification_event_id=data.verification_event_id,
            detection_event_id=data.detection_event_id,
            previous_status=data.previous_status,
            new_status=data.new_status,
            notes=data.notes,
            metadata=dict(data.metadata),
        )
        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO admin_actions (
                    id, server_id, user_id, admin_id, verification_event_id, detection_event_id,
                    action_type, action_at, previous_status, new_status, notes, metadata_json
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    action.id,
                    action.server_id,
                    action.user_id,
                    action.admin_id,
                    action.verification_event_id,
                    action.detection_event_id,
                    action.action_type.value,
                    to_iso(action.action_at),
                    action.previous_status.value if action.previous_status else None,
                    action.new_status.value if action.new_status else None,
                    action.notes,
                    dump_json(action.metadata),
                ),
            )
            await db.commit()
        return action

    async def _select(self, where: str, params: tuple[Any, ...], limit: int) -> list[AdminAction]:
        async with self._connect() as db:
            async with db.execute(
                f"SELECT * FROM admin_actions WHERE {where} ORDER BY action_at DESC LIMIT ?",
                (*params, max(1, min(200, int(limit)))),
            ) as cur:
                rows = await cur.fetchall()
        return [self._from_row(r) for r in rows]

    async def find_admin_actions_for_user(self, server_id: str, user_id: str, limit: int = 50) -> list[AdminAction]:
        return await self._select("server_id = ? AND user_id = ?", (str(server_id), str(user_id)), limit)

    async def find_admin_actions_by_admin(
        self, admin_id: str, server_id: Optional[str] = None, limit: int = 50
    ) -> list[AdminAction]:
        if server_id is None:
            return await self._select("admin_id = ?", (str(admin_id),), limit)
        return await self._select("admin_id = ? AND server_id = ?", (str(admin_id), str(server_id)), limit)

    async def find_admin_actions_by_verification_event(
        self, verification_event_id: str, limit: int = 50
    ) -> list[AdminAction]:
        return await self._select("verification_event_id = ?", (str(verification_event_id),), limit)
