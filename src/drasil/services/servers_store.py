from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

import aiosqlite

from ..config import Settings
from ..constants import MAX_MESSAGE_TIMEFRAME_SECONDS
from ..detection.models import ServerRules
from ..errors import PersistenceError
from ..observability import observability
from .base import BaseStore, dump_json, from_iso, load_json, to_iso

SETTING_KEYS = (
    "message_threshold",
    "message_timeframe",
    "suspicious_keywords",
    "min_confidence_threshold",
    "auto_restrict",
)


@dataclass(frozen=True)
class ServerRecord:
    id: str
    name: Optional[str]
    is_active: bool
    created_at: datetime
    updated_at: datetime
    settings: dict[str, Any] = field(default_factory=dict)


def _positive_int(value: Any, default: int) -> int:
    if isinstance(value, bool):
        return default
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    return parsed if parsed > 0 else default


def _percent(value: Any, default: int) -> int:
    if isinstance(value, bool):
        return default
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    return parsed if 0 <= parsed <= 100 else default


def _keywords(value: Any, default: tuple[str, ...]) -> tuple[str, ...]:
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, (list, tuple)):
        return default
    return tuple(str(kw).strip() for kw in value if str(kw).strip())


class ServersStore(BaseStore):
    """servers table; also the RulesProvider for detection."""

    def __init__(self, sqlite_path: str, settings: Settings, cache_ttl_seconds: int = 120) -> None:
        super().__init__(sqlite_path, cache_ttl_seconds)
        self._settings = settings

    async def _create_tables(self, db: aiosqlite.Connection) -> None:
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS servers (
                id TEXT PRIMARY KEY,
                name TEXT NULL,
                is_active INTEGER NOT NULL DEFAULT 1,
                settings_json TEXT NOT NULL DEFAULT '{}',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )

    def _from_row(self, row: aiosqlite.Row) -> ServerRecord:
        return ServerRecord(
            id=str(row["id"]),
            name=row["name"],
            is_active=bool(row["is_active"]),
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
            settings=load_json(row["settings_json"], {}),
        )

    async def find_server_by_id(self, server_id: str) -> Optional[ServerRecord]:
        async with self._connect() as db:
            async with db.execute("SELECT * FROM servers WHERE id = ?", (str(server_id),)) as cur:
                row = await cur.fetchone()
        return self._from_row(row) if row else None

    async def ensure_server(self, server_id: str, name: Optional[str] = None) -> ServerRecord:
        now = to_iso(datetime.now(timezone.utc))
        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO servers (id, name, created_at, updated_at) VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = COALESCE(excluded.name, servers.name)
                """,
                (str(server_id), name, now, now),
            )
            await db.commit()
            async with db.execute("SELECT * FROM servers WHERE id = ?", (str(server_id),)) as cur:
                row = await cur.fetchone()
        return self._from_row(row)

    async def update_settings(self, server_id: str, changes: dict[str, Any]) -> ServerRecord:
        """Merge ``changes`` into the server's settings; unknown keys are dropped."""
        record = await self.ensure_server(server_id)
        merged = dict(record.settings)
        for key, value in changes.items():
            if key in SETTING_KEYS:
                merged[key] = value
        now = to_iso(datetime.now(timezone.utc))
        async with self._connect() as db:
            await db.execute(
                "UPDATE servers SET settings_json = ?, updated_at = ? WHERE id = ?",
                (dump_json(merged), now, str(server_id)),
            )
            await db.commit()
        self._cache.delete(str(server_id))
        return ServerRecord(record.id, record.name, record.is_active, record.created_at, from_iso(now), merged)

    async def get_server_config(self, server_id: str) -> ServerRules:
        cached = self._cache.get(str(server_id))
        if cached is not None:
            return cached

        try:
            record = await self.find_server_by_id(server_id)
        except PersistenceError as e:
            # Not cached, so the next call retries storage
            observability.log_persistence_failure("get_server_config", e, {"server_id": str(server_id)})
            return self.resolve_rules(str(server_id), {})
        rules = self.resolve_rules(str(server_id), record.settings if record else {})
        self._cache.set(str(server_id), rules)
        return rules

    def resolve_rules(self, server_id: str, overrides: dict[str, Any]) -> ServerRules:
        s = self._settings
        auto_restrict = overrides.get("auto_restrict", s.default_auto_restrict)
        return ServerRules(
            server_id=server_id,
            message_threshold=_positive_int(overrides.get("message_threshold"), s.default_message_threshold),
            timeframe_seconds=min(
                _positive_int(overrides.get("message_timeframe"), s.default_message_timeframe_seconds),
                MAX_MESSAGE_TIMEFRAME_SECONDS,
            ),
            suspicious_keywords=_keywords(overrides.get("suspicious_keywords"), s.default_suspicious_keywords),
            min_confidence_threshold=_percent(
                overrides.get("min_confidence_threshold"), s.default_min_confidence_threshold
            ),
            auto_restrict=auto_restrict if isinstance(auto_restrict, bool) else s.default_auto_restrict,
        )
