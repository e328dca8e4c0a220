from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Hashable, Optional

from ..detection.models import utcnow
from ..errors import CaseConflictError, NotFoundError
from ..interfaces import VerificationEventRepository
from ..observability import observability
from .models import VerificationEvent, VerificationStatus

log = logging.getLogger("drasil.lifecycle")


class KeyedLock:
    """One asyncio.Lock per key, dropped once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._waiters: dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                self._waiters.pop(key, None)
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


class VerificationLifecycle:
    """Sole owner of verification case status transitions.

    PENDING -> VERIFIED | BANNED, VERIFIED | BANNED -> PENDING (reopen).
    Ban is accepted from any state.
    """

    def __init__(self, cases: VerificationEventRepository) -> None:
        self._cases = cases

    async def find_active(self, server_id: str, user_id: str) -> Optional[VerificationEvent]:
        return await self._cases.find_active_verification_event(server_id, user_id)

    async def find_latest(self, server_id: str, user_id: str) -> Optional[VerificationEvent]:
        return await self._cases.find_latest_verification_event(server_id, user_id)

    async def open(
        self,
        server_id: str,
        user_id: str,
        detection_event_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> VerificationEvent:
        active = await self._cases.find_active_verification_event(server_id, user_id)
        if active is not None:
            raise CaseConflictError(server_id, user_id)
        case = await self._cases.create_verification_event(server_id, user_id, detection_event_id, notes=notes)
        observability.log_transition(case.id, server_id, user_id, None, case.status.value, None)
        return case

    async def verify(self, event: VerificationEvent, moderator_id: str, notes: Optional[str] = None) -> VerificationEvent:
        current = await self.reload(event)
        if current.status is not VerificationStatus.PENDING:
            raise NotFoundError(
                "VerificationEvent",
                current.id,
                f"Verification event {current.id} is {current.status.value}, not pending",
            )
        return await self._resolve(current, VerificationStatus.VERIFIED, moderator_id, notes)

    async def ban(self, event: VerificationEvent, moderator_id: str, notes: Optional[str] = None) -> VerificationEvent:
        current = await self.reload(event)
        return await self._resolve(current, VerificationStatus.BANNED, moderator_id, notes)

    async def reopen(self, event: VerificationEvent, moderator_id: str, notes: Optional[str] = None) -> VerificationEvent:
        current = await self.reload(event)
        if current.status is VerificationStatus.PENDING:
            raise NotFoundError(
                "VerificationEvent",
                current.id,
                f"Verification event {current.id} is already pending",
            )
        reopened = current.evolve(
            status=VerificationStatus.PENDING,
            resolved_at=None,
            resolved_by=None,
            updated_at=utcnow(),
            notes=notes if notes is not None else current.notes,
        )
        return await self._apply(current, reopened, moderator_id)

    async def reload(self, event: VerificationEvent) -> VerificationEvent:
        """The stored copy of ``event``; callers may hold a stale one."""
        current = await self._cases.find_by_id(event.id)
        if current is None:
            raise NotFoundError("VerificationEvent", event.id)
        return current

    async def _resolve(
        self,
        current: VerificationEvent,
        status: VerificationStatus,
        moderator_id: str,
        notes: Optional[str],
    ) -> VerificationEvent:
        now = utcnow()
        resolved = current.evolve(
            status=status,
            resolved_at=now,
            resolved_by=str(moderator_id),
            updated_at=now,
            notes=notes if notes is not None else current.notes,
        )
        return await self._apply(current, resolved, moderator_id)

    async def _apply(self, current: VerificationEvent, target: VerificationEvent, moderator_id: str) -> VerificationEvent:
        stored = await self._cases.update_status(target, current.status)
        if stored is None:
            raise NotFoundError(
                "VerificationEvent",
                current.id,
                f"Verification event {current.id} changed while it was being updated",
            )
        observability.log_transition(
            current.id, current.server_id, current.user_id, current.status.value, stored.status.value, moderator_id
        )
        log.info("Case %s %s -> %s by %s", current.id, current.status.value, stored.status.value, moderator_id)
        return stored
