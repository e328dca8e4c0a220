from __future__ import annotations

from typing import Any, Optional

from ..detection.models import ClassifierRequest, ClassifierVerdict, DetectionResult, ServerRules
from ..errors import ExternalServiceError
from ..moderation.models import VerificationEvent


class FakeClassifier:
    """ProfileRiskClassifier that returns a canned verdict or raises."""

    def __init__(self, verdict: Optional[ClassifierVerdict] = None, *, fail: bool = False):
        self.verdict = verdict or ClassifierVerdict(result="OK", reasons=["classifier found profile normal"])
        self.fail = fail
        self.requests: list[ClassifierRequest] = []

    @property
    def calls(self) -> int:
        return len(self.requests)

    async def classify(self, request: ClassifierRequest) -> ClassifierVerdict:
        self.requests.append(request)
        if self.fail:
            raise ExternalServiceError("classifier timed out")
        return self.verdict


class StaticRulesProvider:
    """RulesProvider returning the same rules for every server."""

    def __init__(self, rules: ServerRules):
        self.rules = rules

    async def get_server_config(self, server_id: str) -> ServerRules:
        return self.rules


class RecordingEnforcementGateway:
    """EnforcementGateway that records calls instead of touching Discord."""

    def __init__(self, *, succeed: bool = True, thread_id: Optional[str] = "thread-1"):
        self.succeed = succeed
        self.thread_id = thread_id
        self.calls: list[tuple[str, tuple[Any, ...]]] = []

    def count(self, name: str) -> int:
        return sum(1 for call, _ in self.calls if call == name)

    async def assign_restricted_role(self, server_id: str, user_id: str) -> bool:
        self.calls.append(("assign_restricted_role", (server_id, user_id)))
        return self.succeed

    async def remove_restricted_role(self, server_id: str, user_id: str) -> bool:
        self.calls.append(("remove_restricted_role", (server_id, user_id)))
        return self.succeed

    async def ban_member(self, server_id: str, user_id: str, reason: Optional[str] = None) -> bool:
        self.calls.append(("ban_member", (server_id, user_id, reason)))
        return self.succeed

    async def create_verification_thread(self, server_id: str, user_id: str) -> Optional[str]:
        self.calls.append(("create_verification_thread", (server_id, user_id)))
        return self.thread_id if self.succeed else None

    async def resolve_thread(self, server_id: str, thread_id: str, status: str) -> bool:
        self.calls.append(("resolve_thread", (server_id, thread_id, status)))
        return self.succeed

    async def reopen_thread(self, server_id: str, thread_id: str) -> bool:
        self.calls.append(("reopen_thread", (server_id, thread_id)))
        return self.succeed


class RecordingNotificationGateway:
    """NotificationGateway that keeps every notice and log entry in memory."""

    def __init__(self, *, succeed: bool = True):
        self.succeed = succeed
        self.notices: list[tuple[VerificationEvent, Optional[DetectionResult]]] = []
        self.control_updates: list[VerificationEvent] = []
        self.log_entries: list[str] = []

    async def upsert_flagged_user_notification(
        self, case: VerificationEvent, detection: Optional[DetectionResult]
    ) -> Optional[str]:
        self.notices.append((case, detection))
        if not self.succeed:
            return None
        return case.notification_message_id or f"notice-{case.id}"

    async def update_notification_controls(self, case: VerificationEvent) -> bool:
        self.control_updates.append(case)
        return self.succeed

    async def append_action_log_entry(self, case: VerificationEvent, summary: str) -> bool:
        self.log_entries.append(summary)
        return self.succeed
