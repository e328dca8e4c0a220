"""
Collaborator contracts for the detection and moderation core.

Each component receives the implementations it needs through its constructor.
The aiosqlite stores, the OpenAI classifier and the discord.py gateways are the
production implementations; drasil.testing.fakes provides in-memory ones.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional, Protocol, runtime_checkable

from .detection.models import (
    ClassifierRequest,
    ClassifierVerdict,
    DetectionEvent,
    DetectionResult,
    DetectionType,
    ServerRules,
)
from .moderation.models import AdminAction, AdminActionData, VerificationEvent, VerificationStatus


@runtime_checkable
class RulesProvider(Protocol):
    async def get_server_config(self, server_id: str) -> ServerRules: ...


@runtime_checkable
class ProfileRiskClassifier(Protocol):
    """Remote profile verdict. Raises ExternalServiceError on failure or timeout.

    Callers treat any other exception as an unavailable classifier too.
    """

    async def classify(self, request: ClassifierRequest) -> ClassifierVerdict: ...


class ServerRepository(Protocol):
    async def find_server_by_id(self, server_id: str) -> Any: ...

    async def ensure_server(self, server_id: str, name: Optional[str] = None) -> Any: ...


class UserRepository(Protocol):
    async def find_user_by_id(self, user_id: str) -> Any: ...

    async def ensure_user(
        self,
        user_id: str,
        username: Optional[str] = None,
        account_created_at: Optional[datetime] = None,
        discriminator: Optional[str] = None,
    ) -> Any: ...

    async def ensure_member(self, server_id: str, user_id: str, join_date: Optional[datetime] = None) -> Any: ...

    async def set_restricted(self, server_id: str, user_id: str, restricted: bool) -> None: ...

    async def update_reputation_score(self, user_id: str, score: float, server_id: Optional[str] = None) -> None: ...

    async def list_member_scores(self, user_id: str) -> list[float]: ...


class DetectionEventRepository(Protocol):
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
    ) -> DetectionEvent: ...

    async def find_by_id(self, detection_event_id: str) -> Optional[DetectionEvent]: ...

    async def find_detection_events_by_server_and_user(
        self,
        server_id: str,
        user_id: str,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[DetectionEvent]: ...

    async def link_verification_event(self, detection_event_id: str, verification_event_id: str) -> None: ...

    async def attach_thread(self, detection_event_id: str, thread_id: str) -> None: ...

    async def stamp_admin_resolution(
        self, detection_event_id: str, action: str, admin_id: str, at: Optional[datetime] = None
    ) -> bool: ...

    async def delete_detection_events_older_than(self, days: int) -> int: ...


class VerificationEventRepository(Protocol):
    async def create_verification_event(
        self,
        server_id: str,
        user_id: str,
        detection_event_id: Optional[str] = None,
        notes: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> VerificationEvent: ...

    async def update_status(
        self, event: VerificationEvent, expected: VerificationStatus
    ) -> Optional[VerificationEvent]: ...

    async def find_by_id(self, verification_event_id: str) -> Optional[VerificationEvent]: ...

    async def find_active_verification_event(self, server_id: str, user_id: str) -> Optional[VerificationEvent]: ...

    async def find_latest_verification_event(self, server_id: str, user_id: str) -> Optional[VerificationEvent]: ...

    async def find_verification_events_by_server_and_user(
        self, server_id: str, user_id: str, limit: int = 25
    ) -> list[VerificationEvent]: ...

    async def attach_thread(self, verification_event_id: str, thread_id: str) -> None: ...

    async def set_notification_message(self, verification_event_id: str, message_id: str) -> None: ...


class AdminActionRepository(Protocol):
    async def create_admin_action(self, data: AdminActionData, action_at: Optional[datetime] = None) -> AdminAction: ...

    async def find_admin_actions_for_user(self, server_id: str, user_id: str, limit: int = 50) -> list[AdminAction]: ...

    async def find_admin_actions_by_admin(
        self, admin_id: str, server_id: Optional[str] = None, limit: int = 50
    ) -> list[AdminAction]: ...

    async def find_admin_actions_by_verification_event(
        self, verification_event_id: str, limit: int = 50
    ) -> list[AdminAction]: ...


@runtime_checkable
class EnforcementGateway(Protocol):
    """Platform side effects. Every call reports success as a bool and never raises."""

    async def assign_restricted_role(self, server_id: str, user_id: str) -> bool: ...

    async def remove_restricted_role(self, server_id: str, user_id: str) -> bool: ...

    async def ban_member(self, server_id: str, user_id: str, reason: Optional[str] = None) -> bool: ...

    async def create_verification_thread(self, server_id: str, user_id: str) -> Optional[str]: ...

    async def resolve_thread(self, server_id: str, thread_id: str, status: str) -> bool: ...

    async def reopen_thread(self, server_id: str, thread_id: str) -> bool: ...


@runtime_checkable
class NotificationGateway(Protocol):
    """Moderator-facing notifications. Failures are logged by the gateway and not retried."""

    async def upsert_flagged_user_notification(
        self, case: VerificationEvent, detection: Optional[DetectionResult]
    ) -> Optional[str]: ...

    async def update_notification_controls(self, case: VerificationEvent) -> bool: ...

    async def append_action_log_entry(self, case: VerificationEvent, summary: str) -> bool: ...
