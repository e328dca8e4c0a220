from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import aiosqlite

from ..detection.models import DetectionEvent, DetectionType
from ..errors import ValidationError
from .base import BaseStore, dump_json, from_iso, load_json, new_id, to_iso


class DetectionEventsStore(BaseStore):
    async def _create_tables(self, db: aiosqlite.Connection) -> None:
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS detection_events (
                id TEXT PRIMARY KEY,
                server_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                detection_type TEXT NOT NULL,
                confidence REAL NOT NULL,
                reasons_json TEXT NOT NULL DEFAULT '[]',
                used_gpt INTEGER NOT NULL DEFAULT 0,
                message_id TEXT NULL,
                channel_id TEXT NULL,
                thread_id TEXT NULL,
                latest_verification_event_id TEXT NULL,
                detected_at TEXT NOT NULL,
                admin_action TEXT NULL,
                admin_action_by TEXT NULL,
                admin_action_at TEXT NULL,
                metadata_json TEXT NOT NULL DEFAULT '{}'
            )
            """
        )
        await db.execute(
            "CREATE INDEX IF NOT EXISTS idx_detections_server_user ON detection_events (server_id, user_id, detected_at)"
        )
        await db.execute("CREATE INDEX IF NOT EXISTS idx_detections_detected_at ON detection_events (detected_at)")

    def _from_row(self, row: aiosqlite.Row) -> DetectionEvent:
        return DetectionEvent(
            id=str(row["id"]),
            server_id=str(row["server_id"]),
            user_id=str(row["user_id"]),
            detection_type=DetectionType(row["detection_type"]),
            confidence=float(row["confidence"]),
            reasons=list(load_json(row["reasons_json"], [])),
            detected_at=from_iso(row["detected_at"]),
            used_gpt=bool(row["used_gpt"]),
            message_id=row["message_id"],
            channel_id=row["channel_id"],
            thread_id=row["thread_id"],
            latest_verification_event_id=row["latest_verification_event_id"],
            admin_action=row["admin_action"],
            admin_action_by=row["admin_action_by"],
            admin_action_at=from_iso(row["admin_action_at"]),
            metadata=load_json(row["metadata_json"], {}),
        )

    async def create_detection_event(
        self,
        *,
        server_id: str,
        user_id: str,
        detection_type: DetectionType,
        confidence: float,
        reasons: list[str],
        used_gpt: bool = False,
        message_id: Optional[str] = None,
        channel_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        detected_at: Optional[datetime] = None,
    ) -> DetectionEvent:
        if not server_id or not user_id:
            raise ValidationError("server_id and user_id are required for a detection event")
        if not 0.0 <= confidence <= 1.0:
            raise ValidationError(f"confidence {confidence} is outside [0, 1]", field="confidence")

        event = DetectionEvent(
            id=new_id(),
            server_id=str(server_id),
            user_id=str(user_id),
            detection_type=DetectionType(detection_type),
            confidence=float(confidence),
            reasons=list(reasons),
            detected_at=detected_at or datetime.now(timezone.utc),
            used_gpt=used_gpt,
            message_id=message_id,
            channel_id=channel_id,
            metadata=dict(metadata or {}),
        )
        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO detection_events (
                    id, server_id, user_id, detection_type, confidence, reasons_json, used_gpt,
                    message_id, channel_id, detected_at, metadata_json
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.id,
                    event.server_id,
                    event.user_id,
                    event.detection_type.value,
                    event.confidence,
                    dump_json(event.reasons),
                    int(event.used_gpt),
                    event.message_id,
                    event.channel_id,
                    to_iso(event.detected_at),
                    dump_json(event.metadata),
                ),
            )
            await db.commit()
        return event

    async def find_by_id(self, detection_event_id: str) -> Optional[DetectionEvent]:
        async with self._connect() as db:
            async with db.execute("SELECT * FROM detection_events WHERE id = ?", (str(detection_event_id),)) as cur:
                row = await cur.fetchone()
        return self._from_row(row) if row else None

    async def find_detection_events_by_server_and_user(
        self,
        server_id: str,
        user_id: str,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[DetectionEvent]:
        """Newest first."""
        sql = "SELECT * FROM detection_events WHERE server_id = ? AND user_id = ?"
        params: list[Any] = [str(server_id), str(user_id)]
        if since is not None:
            sql += " AND detected_at >= ?"
            params.append(to_iso(since))
        sql += " ORDER BY detected_at DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(max(1, int(limit)))
        async with self._connect() as db:
            async with db.execute(sql, params) as cur:
                rows = await cur.fetchall()
        return [self._from_row(r) for r in rows]

    async def link_verification_event(self, detection_event_id: str, verification_event_id: str) -> None:
        async with self._connect() as db:
            await db.execute(
                "UPDATE detection_events SET latest_verification_event_id = ? WHERE id = ?",
                (str(verification_event_id), str(detection_event_id)),
            )
            await db.commit()

    async def attach_thread(self, detection_event_id: str, thread_id: str) -> None:
        async with self._connect() as db:
            await db.execute(
                "UPDATE detection_events SET thread_id = ? WHERE id = ?",
                (str(thread_id), str(detection_event_id)),
            )
            await db.commit()

    async def stamp_admin_resolution(
        self,
        detection_event_id: str,
        action: str,
        admin_id: str,
        at: Optional[datetime] = None,
    ) -> bool:
        """Set the one-time resolution stamp. False when already stamped or missing."""
        async with self._connect() as db:
            cur = await db.execute(
                """
                UPDATE detection_events
                SET admin_action = ?, admin_action_by = ?, admin_action_at = ?
                WHERE id = ? AND admin_action IS NULL
                """,
                (action, str(admin_id), to_iso(at or datetime.now(timezone.utc)), str(detection_event_id)),
            )
            await db.commit()
            return cur.rowcount > 0

    async def delete_detection_events_older_than(self, days: int) -> int:
        if days < 0:
            raise ValidationError("retention days must not be negative", field="days")
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        async with self._connect() as db:
            cur = await db.execute("DELETE FROM detection_events WHERE detected_at < ?", (to_iso(cutoff),))
            await db.commit()
            deleted = cur.rowcount
        self._logger.info("Deleted %d detection events older than %d days", deleted, days)
        return deleted
