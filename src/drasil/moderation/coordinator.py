from __future__ import annotations

import logging
from typing import Awaitable, Optional

from ..detection.models import DetectionResult
from ..errors import CaseConflictError, NotFoundError, PersistenceError
from ..interfaces import (
    DetectionEventRepository,
    EnforcementGateway,
    NotificationGateway,
    RulesProvider,
    UserRepository,
    VerificationEventRepository,
)
from ..observability import observability
from .auditor import AdminActionAuditor
from .lifecycle import KeyedLock, VerificationLifecycle
from .models import (
    AdminAction,
    AdminActionData,
    AdminActionType,
    ModerationOutcome,
    VerificationEvent,
    VerificationStatus,
)

log = logging.getLogger("drasil.coordinator")


class ModerationActionCoordinator:
    """Decides which side effects a detection or moderator decision needs.

    Case creation for a (server, user) pair is serialized with a KeyedLock, and
    the store's unique index on pending cases backs it up across processes.
    Gateway failures never raise; they are collected on the returned
    ModerationOutcome.
    """

    def __init__(
        self,
        *,
        lifecycle: VerificationLifecycle,
        auditor: AdminActionAuditor,
        cases: VerificationEventRepository,
        detections: DetectionEventRepository,
        users: UserRepository,
        rules: RulesProvider,
        enforcement: EnforcementGateway,
        notifications: NotificationGateway,
        locks: Optional[KeyedLock] = None,
    ) -> None:
        self._lifecycle = lifecycle
        self._auditor = auditor
        self._cases = cases
        self._detections = detections
        self._users = users
        self._rules = rules
        self._enforcement = enforcement
        self._notifications = notifications
        self._locks = locks or KeyedLock()

    async def handle_detection(self, server_id: str, user_id: str, result: DetectionResult) -> ModerationOutcome:
        if not result.suspicious:
            return ModerationOutcome(case=None, skipped="label_ok")

        rules = await self._rules.get_server_config(server_id)
        if result.confidence * 100 < rules.min_confidence_threshold:
            log.info(
                "Detection for %s in %s below threshold (%.0f%% < %d%%)",
                user_id, server_id, result.confidence * 100, rules.min_confidence_threshold,
            )
            return ModerationOutcome(case=None, skipped="below_threshold")

        async with self._locks.hold((server_id, user_id)):
            case = await self._lifecycle.find_active(server_id, user_id)
            created = False
            if case is None:
                try:
                    case = await self._lifecycle.open(server_id, user_id, result.detection_event_id)
                    created = True
                except CaseConflictError:
                    case = await self._lifecycle.find_active(server_id, user_id)
                    if case is None:
                        raise

        outcome = ModerationOutcome(case=case, created=created)
        if result.detection_event_id:
            await self._best_effort(
                outcome, "link_detection",
                self._detections.link_verification_event(result.detection_event_id, case.id),
            )

        if not created:
            # Existing case: refresh the moderator notification only
            await self._upsert_notification(outcome, result)
            return outcome

        if rules.auto_restrict:
            await self._restrict(outcome, server_id, user_id)

        thread_id = await self._enforcement.create_verification_thread(server_id, user_id)
        if thread_id:
            await self._attach_thread(outcome, thread_id, result.detection_event_id)
        else:
            outcome.failed_effects.append("create_verification_thread")
        self._log_effect("create_verification_thread", bool(thread_id), server_id, user_id)

        await self._upsert_notification(outcome, result)
        return outcome

    async def verify_user(
        self, server_id: str, user_id: str, moderator_id: str, notes: Optional[str] = None
    ) -> ModerationOutcome:
        async with self._locks.hold((server_id, user_id)):
            active = await self._lifecycle.find_active(server_id, user_id)
            if active is None:
                raise NotFoundError(
                    "VerificationEvent",
                    None,
                    f"No pending verification case for user {user_id} in server {server_id}",
                )
            await self._auditor.check_subjects(server_id, user_id)
            case = await self._lifecycle.verify(active, moderator_id, notes)
            outcome = ModerationOutcome(case=case)
            outcome.action = await self._record(
                outcome, self._case_action(AdminActionType.VERIFY, case, active.status, moderator_id, notes)
            )

        await self._stamp_detection(outcome, case, "Verified", moderator_id)

        ok = await self._enforcement.remove_restricted_role(server_id, user_id)
        self._log_effect("remove_restricted_role", ok, server_id, user_id)
        if ok:
            await self._best_effort(outcome, "set_restricted", self._users.set_restricted(server_id, user_id, False))
        else:
            outcome.failed_effects.append("remove_restricted_role")

        await self._resolve_thread(outcome, case)
        await self._notify_action(outcome, case, outcome.action)
        return outcome

    async def ban_user(
        self, server_id: str, user_id: str, moderator_id: str, reason: Optional[str] = None
    ) -> ModerationOutcome:
        """Ban works with or without a pending case; the latest case is marked banned if one exists."""
        async with self._locks.hold((server_id, user_id)):
            existing = await self._lifecycle.find_active(server_id, user_id)
            if existing is None:
                existing = await self._lifecycle.find_latest(server_id, user_id)
            await self._auditor.check_subjects(server_id, user_id)
            case = await self._lifecycle.ban(existing, moderator_id, reason) if existing else None
            outcome = ModerationOutcome(case=case)
            outcome.action = await self._record(
                outcome,
                AdminActionData(
                    server_id=server_id,
                    user_id=user_id,
                    admin_id=moderator_id,
                    action_type=AdminActionType.BAN,
                    verification_event_id=case.id if case else None,
                    detection_event_id=case.detection_event_id if case else None,
                    previous_status=existing.status if existing else None,
                    new_status=VerificationStatus.BANNED,
                    notes=reason,
                ),
            )

        ok = await self._enforcement.ban_member(server_id, user_id, reason)
        self._log_effect("ban_member", ok, server_id, user_id)
        if not ok:
            outcome.failed_effects.append("ban_member")

        if case is not None:
            await self._stamp_detection(outcome, case, "Banned", moderator_id)
            await self._resolve_thread(outcome, case)
            await self._notify_action(outcome, case, outcome.action)
        return outcome

    async def reopen_verification(
        self, event: VerificationEvent, moderator_id: str, notes: Optional[str] = None
    ) -> ModerationOutcome:
        async with self._locks.hold((event.server_id, event.user_id)):
            current = await self._lifecycle.reload(event)
            await self._auditor.check_subjects(current.server_id, current.user_id)
            case = await self._lifecycle.reopen(current, moderator_id, notes)
            outcome = ModerationOutcome(case=case)
            outcome.action = await self._record(
                outcome, self._case_action(AdminActionType.REOPEN, case, current.status, moderator_id, notes)
            )

        await self._restrict(outcome, case.server_id, case.user_id)
        if case.thread_id:
            ok = await self._enforcement.reopen_thread(case.server_id, case.thread_id)
            self._log_effect("reopen_thread", ok, case.server_id, case.user_id)
            if not ok:
                outcome.failed_effects.append("reopen_thread")
        await self._notify_action(outcome, case, outcome.action)
        return outcome

    async def create_verification_thread(self, event: VerificationEvent, moderator_id: str) -> ModerationOutcome:
        if event.thread_id:
            return ModerationOutcome(case=event, skipped="thread_exists")

        outcome = ModerationOutcome(case=event)
        thread_id = await self._enforcement.create_verification_thread(event.server_id, event.user_id)
        self._log_effect("create_verification_thread", bool(thread_id), event.server_id, event.user_id)
        if not thread_id:
            outcome.failed_effects.append("create_verification_thread")
            return outcome

        await self._cases.attach_thread(event.id, thread_id)
        if event.detection_event_id:
            await self._best_effort(
                outcome, "attach_detection_thread", self._detections.attach_thread(event.detection_event_id, thread_id)
            )
        outcome.case = event.evolve(thread_id=thread_id)
        outcome.action = await self._record(
            outcome, self._case_action(AdminActionType.CREATE_THREAD, outcome.case, event.status, moderator_id, None)
        )
        await self._notify_action(outcome, outcome.case, outcome.action)
        return outcome

    @staticmethod
    def _case_action(
        action_type: AdminActionType,
        case: VerificationEvent,
        previous: VerificationStatus,
        moderator_id: str,
        notes: Optional[str],
    ) -> AdminActionData:
        return AdminActionData(
            server_id=case.server_id,
            user_id=case.user_id,
            admin_id=moderator_id,
            action_type=action_type,
            verification_event_id=case.id,
            detection_event_id=case.detection_event_id,
            previous_status=previous,
            new_status=case.status,
            notes=notes,
        )

    async def _record(self, outcome: ModerationOutcome, data: AdminActionData) -> Optional[AdminAction]:
        # Runs after a committed transition, so a failed write is collected instead of raised
        try:
            return await self._auditor.record_action(data)
        except PersistenceError as e:
            observability.log_persistence_failure(
                "record_action", e, {"server_id": data.server_id, "user_id": data.user_id}
            )
            outcome.failed_effects.append("record_action")
            return None

    async def _restrict(self, outcome: ModerationOutcome, server_id: str, user_id: str) -> None:
        ok = await self._enforcement.assign_restricted_role(server_id, user_id)
        self._log_effect("assign_restricted_role", ok, server_id, user_id)
        if ok:
            await self._best_effort(outcome, "set_restricted", self._users.set_restricted(server_id, user_id, True))
        else:
            outcome.failed_effects.append("assign_restricted_role")

    async def _attach_thread(self, outcome: ModerationOutcome, thread_id: str, detection_event_id: Optional[str]) -> None:
        case = outcome.case
        await self._best_effort(outcome, "attach_thread", self._cases.attach_thread(case.id, thread_id))
        if detection_event_id:
            await self._best_effort(
                outcome, "attach_detection_thread", self._detections.attach_thread(detection_event_id, thread_id)
            )
        outcome.case = case.evolve(thread_id=thread_id)

    async def _resolve_thread(self, outcome: ModerationOutcome, case: VerificationEvent) -> None:
        if not case.thread_id:
            return
        ok = await self._enforcement.resolve_thread(case.server_id, case.thread_id, case.status.value)
        self._log_effect("resolve_thread", ok, case.server_id, case.user_id)
        if not ok:
            outcome.failed_effects.append("resolve_thread")

    async def _upsert_notification(self, outcome: ModerationOutcome, result: DetectionResult) -> None:
        case = outcome.case
        message_id = await self._notifications.upsert_flagged_user_notification(case, result)
        if not message_id:
            outcome.failed_effects.append("upsert_flagged_user_notification")
            return
        if message_id != case.notification_message_id:
            await self._best_effort(
                outcome, "set_notification_message", self._cases.set_notification_message(case.id, message_id)
            )
            outcome.case = case.evolve(notification_message_id=message_id)

    async def _notify_action(
        self, outcome: ModerationOutcome, case: VerificationEvent, action: Optional[AdminAction]
    ) -> None:
        if not await self._notifications.update_notification_controls(case):
            outcome.failed_effects.append("update_notification_controls")
        if action is None:
            return
        summary = self._auditor.format_action_summary(action)
        if not await self._notifications.append_action_log_entry(case, summary):
            outcome.failed_effects.append("append_action_log_entry")

    async def _stamp_detection(
        self, outcome: ModerationOutcome, case: VerificationEvent, resolution: str, moderator_id: str
    ) -> None:
        if case.detection_event_id:
            await self._best_effort(
                outcome,
                "stamp_admin_resolution",
                self._detections.stamp_admin_resolution(case.detection_event_id, resolution, moderator_id),
            )

    async def _best_effort(self, outcome: ModerationOutcome, name: str, op: Awaitable[object]) -> None:
        """Bookkeeping writes that must not undo a committed transition."""
        try:
            await op
        except PersistenceError as e:
            case = outcome.case
            observability.log_persistence_failure(
                name, e, {"server_id": case.server_id if case else None, "user_id": case.user_id if case else None}
            )
            outcome.failed_effects.append(name)

    @staticmethod
    def _log_effect(operation: str, ok: bool, server_id: str, user_id: str) -> None:
        observability.log_enforcement(operation, ok, server_id, user_id)
