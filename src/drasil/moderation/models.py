from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class VerificationStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    BANNED = "banned"

    @property
    def terminal(self) -> bool:
        return self is not VerificationStatus.PENDING


class AdminActionType(str, Enum):
    VERIFY = "verify"
    REJECT = "reject"
    BAN = "ban"
    REOPEN = "reopen"
    CREATE_THREAD = "create_thread"


@dataclass(frozen=True)
class VerificationEvent:
    """One moderation case for a (server, user) pair."""

    id: str
    server_id: str
    user_id: str
    status: VerificationStatus
    created_at: datetime
    updated_at: datetime
    detection_event_id: Optional[str] = None
    thread_id: Optional[str] = None
    notification_message_id: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    notes: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def pending(self) -> bool:
        return self.status is VerificationStatus.PENDING

    def evolve(self, **changes: Any) -> "VerificationEvent":
        return replace(self, **changes)


@dataclass(frozen=True)
class AdminAction:
    id: str
    server_id: str
    user_id: str
    admin_id: str
    action_type: AdminActionType
    action_at: datetime
    verification_event_id: Optional[str] = None
    detection_event_id: Optional[str] = None
    previous_status: Optional[VerificationStatus] = None
    new_status: Optional[VerificationStatus] = None
    notes: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AdminActionData:
    """Input to AdminActionAuditor.record_action."""

    server_id: str
    user_id: str
    admin_id: str
    action_type: AdminActionType
    verification_event_id: Optional[str] = None
    detection_event_id: Optional[str] = None
    previous_status: Optional[VerificationStatus] = None
    new_status: Optional[VerificationStatus] = None
    notes: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ModerationOutcome:
    """What a coordinator call did, and which side effects failed."""

    case: Optional[VerificationEvent]
    created: bool = False
    skipped: Optional[str] = None
    action: Optional[AdminAction] = None
    failed_effects: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed_effects
