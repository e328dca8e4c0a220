from __future__ import annotations

import asyncio
import logging
from typing import Optional

from ..constants import ACTION_ICONS
from ..errors import NotFoundError, ValidationError
from ..interfaces import AdminActionRepository, ServerRepository, UserRepository
from .models import AdminAction, AdminActionData, AdminActionType

log = logging.getLogger("drasil.auditor")

_ACTION_TEXT = {
    AdminActionType.VERIFY: "Verified by",
    AdminActionType.REJECT: "Rejected by",
    AdminActionType.BAN: "Banned by",
    AdminActionType.REOPEN: "Verification reopened by",
    AdminActionType.CREATE_THREAD: "Verification thread created by",
}


def format_timestamp(action: AdminAction) -> str:
    return action.action_at.strftime("%Y-%m-%d %H:%M UTC")


class AdminActionAuditor:
    """Only writer of the admin action audit trail."""

    def __init__(
        self,
        actions: AdminActionRepository,
        servers: ServerRepository,
        users: UserRepository,
    ) -> None:
        self._actions = actions
        self._servers = servers
        self._users = users

    async def record_action(self, data: AdminActionData) -> AdminAction:
        if not data.server_id or not data.user_id or not data.admin_id:
            raise ValidationError("server_id, user_id and admin_id are required for an admin action")
        try:
            action_type = AdminActionType(data.action_type)
        except ValueError as e:
            raise ValidationError(f"Unknown admin action type {data.action_type!r}", field="action_type") from e

        await self.check_subjects(data.server_id, data.user_id)
        action = await self._actions.create_admin_action(data)
        log.info(
            "Recorded %s on user %s in server %s by %s", action_type.value, data.user_id, data.server_id, data.admin_id
        )
        return action

    async def check_subjects(self, server_id: str, user_id: str) -> None:
        """Raise NotFoundError unless both the server and the user are stored."""
        server, user = await asyncio.gather(
            self._servers.find_server_by_id(server_id),
            self._users.find_user_by_id(user_id),
        )
        if server is None:
            raise NotFoundError("Server", server_id, f"Server {server_id} not found")
        if user is None:
            raise NotFoundError("User", user_id, f"User {user_id} not found")

    async def actions_for_user(self, server_id: str, user_id: str, limit: int = 50) -> list[AdminAction]:
        return await self._actions.find_admin_actions_for_user(server_id, user_id, limit)

    async def actions_by_admin(self, admin_id: str, server_id: Optional[str] = None, limit: int = 50) -> list[AdminAction]:
        return await self._actions.find_admin_actions_by_admin(admin_id, server_id, limit)

    async def actions_for_case(self, verification_event_id: str, limit: int = 50) -> list[AdminAction]:
        return await self._actions.find_admin_actions_by_verification_event(verification_event_id, limit)

    @staticmethod
    def format_action_summary(action: AdminAction) -> str:
        action_type = AdminActionType(action.action_type)
        icon = ACTION_ICONS.get(action_type.value, "")
        text = _ACTION_TEXT.get(action_type, "Action taken by")
        summary = f"{icon} {text} <@{action.admin_id}>".strip()
        summary += f" at {format_timestamp(action)}"

        if action.previous_status != action.new_status:
            previous = action.previous_status.value if action.previous_status else "none"
            new = action.new_status.value if action.new_status else "none"
            summary += f"\nStatus changed from {previous} to {new}"
        if action.notes:
            summary += f"\nNotes: {action.notes}"
        return summary
