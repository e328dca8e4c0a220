from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from ..constants import (
    BORDERLINE_LOWER,
    BORDERLINE_UPPER,
    CLASSIFIER_LEGITIMATE_DISCOUNT,
    CLASSIFIER_SUSPICIOUS_SCORE,
    DECISION_BOUNDARY,
    HEURISTIC_WEIGHT,
    JOIN_CLASSIFIER_WEIGHT,
    JOIN_NEW_ACCOUNT_WEIGHT,
    NEW_ACCOUNT_THRESHOLD_DAYS,
    NEW_ACCOUNT_WEIGHT,
    NEW_MEMBER_WEIGHT,
    NEW_SERVER_MEMBER_THRESHOLD_DAYS,
    RECENT_SUSPICION_WEIGHT,
    REPUTATION_DEFAULT,
    REPUTATION_MAX,
    REPUTATION_MIN,
    REPUTATION_PENALTY_FACTOR,
    REPUTATION_REWARD,
)
from ..errors import ExternalServiceError, PersistenceError
from ..interfaces import (
    DetectionEventRepository,
    ProfileRiskClassifier,
    RulesProvider,
    ServerRepository,
    UserRepository,
)
from ..observability import observability
from .heuristics import HeuristicScorer, MessageFrequencyTracker
from .models import (
    ClassifierRequest,
    ClassifierStatus,
    ClassifierVerdict,
    ConfidenceLevel,
    DetectionResult,
    DetectionType,
    UserProfile,
    utcnow,
)

log = logging.getLogger("drasil.detection")

CLASSIFIER_UNAVAILABLE_REASON = "classifier unavailable; heuristic-only result"


def age_in_days(moment: Optional[datetime], now: Optional[datetime] = None) -> Optional[int]:
    """Whole days elapsed since ``moment``; None when unknown."""
    if moment is None:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    now = now or utcnow()
    return (now - moment) // timedelta(days=1)


def label_for(score: float) -> str:
    return "SUSPICIOUS" if score >= DECISION_BOUNDARY else "OK"


def confidence_for(score: float) -> float:
    """0 at the decision boundary, 1 at either extreme."""
    return min(1.0, abs(score - DECISION_BOUNDARY) * 2)


class DetectionOrchestrator:
    """Blends heuristics, recent history and the profile classifier into one verdict.

    The returned label and confidence never depend on whether the DetectionEvent
    or the reputation update could be written; write failures are logged and
    reported on ``DetectionResult.persistence_errors``.
    """

    def __init__(
        self,
        *,
        rules: RulesProvider,
        classifier: Optional[ProfileRiskClassifier],
        detections: DetectionEventRepository,
        users: UserRepository,
        servers: ServerRepository,
        heuristics: Optional[HeuristicScorer] = None,
        tracker: Optional[MessageFrequencyTracker] = None,
        recent_history_days: int = 7,
    ) -> None:
        self._rules = rules
        self._classifier = classifier
        self._detections = detections
        self._users = users
        self._servers = servers
        self._heuristics = heuristics or HeuristicScorer()
        self._tracker = tracker or MessageFrequencyTracker()
        self._recent_history_days = recent_history_days

    @property
    def tracker(self) -> MessageFrequencyTracker:
        return self._tracker

    async def detect_message(
        self,
        server_id: str,
        user_id: str,
        content: str,
        profile: Optional[UserProfile] = None,
        *,
        message_id: Optional[str] = None,
        channel_id: Optional[str] = None,
    ) -> DetectionResult:
        started = time.perf_counter()
        persistence_errors: list[str] = []
        score = 0.0
        reasons: list[str] = []

        if await self._has_recent_high_confidence(server_id, user_id, persistence_errors):
            score += RECENT_SUSPICION_WEIGHT
            reasons.append("recent suspicious activity")

        rules = await self._rules.get_server_config(server_id)
        timestamps = self._tracker.record(server_id, user_id)
        heuristic = self._heuristics.score(content, timestamps, rules)
        frequency_hit = self._heuristics.is_frequency_suspicious(timestamps, rules)
        if heuristic.suspicious:
            score += HEURISTIC_WEIGHT
            reasons.extend(heuristic.reasons)

        now = utcnow()
        account_age = age_in_days(profile.account_created_at, now) if profile else None
        member_age = age_in_days(profile.joined_server_at, now) if profile else None
        new_account = account_age is not None and account_age <= NEW_ACCOUNT_THRESHOLD_DAYS
        new_member = member_age is not None and member_age <= NEW_SERVER_MEMBER_THRESHOLD_DAYS
        if new_account:
            score += NEW_ACCOUNT_WEIGHT
            reasons.append("new account")
        if new_member:
            score += NEW_MEMBER_WEIGHT
            reasons.append("recently joined")

        use_classifier = profile is not None and (
            new_account or new_member or BORDERLINE_LOWER <= score <= BORDERLINE_UPPER
        )

        status: ClassifierStatus = "not_used"
        verdict: Optional[ClassifierVerdict] = None
        if use_classifier:
            history = [*profile.recent_messages, content]
            verdict, status = await self._classify(server_id, profile, account_age, history)
            if verdict is None:
                reasons.append(CLASSIFIER_UNAVAILABLE_REASON)
            elif verdict.result == "SUSPICIOUS":
                score = CLASSIFIER_SUSPICIOUS_SCORE
                reasons.extend(verdict.reasons)
            else:
                score = max(0.0, score - CLASSIFIER_LEGITIMATE_DISCOUNT)
                reasons.append("classifier indicates legitimate")

        if verdict is not None:
            detection_type = DetectionType.GPT_ANALYSIS
        elif frequency_hit and not self._heuristics.matched_keywords(content, rules.suspicious_keywords):
            detection_type = DetectionType.MESSAGE_FREQUENCY
        else:
            detection_type = DetectionType.SUSPICIOUS_CONTENT

        score = min(1.0, score)
        result = DetectionResult(
            label=label_for(score),
            confidence=confidence_for(score),
            reasons=reasons,
            detection_type=detection_type,
            trigger_content=content,
            score=score,
            used_gpt=verdict is not None,
            classifier_status=status,
            profile=profile,
            persistence_errors=persistence_errors,
        )
        await self._persist(
            server_id,
            user_id,
            result,
            metadata={"content": content, "classifier": status},
            message_id=message_id,
            channel_id=channel_id,
        )
        self._log(server_id, user_id, result, started)
        return result

    async def detect_new_join(self, server_id: str, user_id: str, profile: UserProfile) -> DetectionResult:
        """Joins always consult the classifier."""
        started = time.perf_counter()
        account_age = age_in_days(profile.account_created_at)
        new_account = account_age is not None and account_age <= NEW_ACCOUNT_THRESHOLD_DAYS

        verdict, status = await self._classify(server_id, profile, account_age, list(profile.recent_messages))
        score = 0.0
        reasons: list[str] = []
        if verdict is None:
            reasons.append(CLASSIFIER_UNAVAILABLE_REASON)
        else:
            reasons.extend(verdict.reasons)
        if new_account:
            score += JOIN_NEW_ACCOUNT_WEIGHT
            reasons.append("new account")
        if verdict is not None and verdict.result == "SUSPICIOUS":
            score += JOIN_CLASSIFIER_WEIGHT

        score = min(1.0, score)
        result = DetectionResult(
            label=label_for(score),
            confidence=confidence_for(score),
            reasons=reasons,
            detection_type=DetectionType.NEW_ACCOUNT,
            trigger_content="server join",
            score=score,
            used_gpt=verdict is not None,
            classifier_status=status,
            profile=profile,
        )
        await self._persist(server_id, user_id, result, metadata={"join": True, "classifier": status})
        self._log(server_id, user_id, result, started)
        return result

    async def record_user_report(
        self,
        server_id: str,
        user_id: str,
        reporter_id: str,
        reason: Optional[str] = None,
        profile: Optional[UserProfile] = None,
    ) -> DetectionResult:
        reasons = [f"reported by <@{reporter_id}>"]
        if reason:
            reasons.append(f"report reason: {reason}")
        return await self._record_forced(
            server_id,
            user_id,
            DetectionType.USER_REPORT,
            reasons,
            {"type": "user_report", "reporter_id": str(reporter_id), "reason": reason},
            profile,
        )

    async def record_manual_flag(
        self,
        server_id: str,
        user_id: str,
        admin_id: str,
        reason: Optional[str] = None,
        profile: Optional[UserProfile] = None,
    ) -> DetectionResult:
        reasons = [f"flagged by <@{admin_id}>"]
        if reason:
            reasons.append(f"flag reason: {reason}")
        return await self._record_forced(
            server_id,
            user_id,
            DetectionType.PATTERN_MATCH,
            reasons,
            {"type": "admin_flag", "admin_id": str(admin_id), "reason": reason},
            profile,
        )

    async def _record_forced(
        self,
        server_id: str,
        user_id: str,
        detection_type: DetectionType,
        reasons: list[str],
        metadata: dict[str, Any],
        profile: Optional[UserProfile],
    ) -> DetectionResult:
        started = time.perf_counter()
        result = DetectionResult(
            label="SUSPICIOUS",
            confidence=1.0,
            reasons=reasons,
            detection_type=detection_type,
            trigger_content=metadata.get("reason") or metadata["type"],
            score=1.0,
            profile=profile,
        )
        await self._persist(server_id, user_id, result, metadata=metadata)
        self._log(server_id, user_id, result, started)
        return result

    async def _has_recent_high_confidence(self, server_id: str, user_id: str, errors: list[str]) -> bool:
        since = utcnow() - timedelta(days=self._recent_history_days)
        try:
            events = await self._detections.find_detection_events_by_server_and_user(server_id, user_id, since=since)
        except PersistenceError as e:
            observability.log_persistence_failure(
                "find_detection_events", e, {"server_id": server_id, "user_id": user_id}
            )
            errors.append(f"history lookup failed: {e}")
            return False
        # OK assessments can be High confidence too; only suspicious ones count
        return any(
            ev.confidence_level is ConfidenceLevel.HIGH and ev.metadata.get("label", "SUSPICIOUS") == "SUSPICIOUS"
            for ev in events
        )

    async def _classify(
        self,
        server_id: str,
        profile: UserProfile,
        account_age: Optional[int],
        history: list[str],
    ) -> tuple[Optional[ClassifierVerdict], ClassifierStatus]:
        """Fail-open: any classifier failure yields (None, "unavailable")."""
        if self._classifier is None:
            log.debug("No classifier configured; skipping for user %s", profile.user_id)
            return None, "unavailable"

        request = ClassifierRequest(
            user_id=profile.user_id,
            username=profile.username,
            account_age_days=account_age,
            server_join_date=profile.joined_server_at,
            message_history_sample=history,
            nickname=profile.nickname,
            discriminator=profile.discriminator,
        )
        started = time.perf_counter()
        try:
            verdict = await self._classifier.classify(request)
        except ExternalServiceError as e:
            observability.log_classifier_call(
                False, (time.perf_counter() - started) * 1000, server_id, profile.user_id, error=e
            )
            return None, "unavailable"
        except Exception as e:
            log.exception("Classifier raised unexpectedly for user %s", profile.user_id)
            observability.log_classifier_call(
                False, (time.perf_counter() - started) * 1000, server_id, profile.user_id, error=e
            )
            return None, "unavailable"
        observability.log_classifier_call(True, (time.perf_counter() - started) * 1000, server_id, profile.user_id)
        return verdict, "ok"

    async def _persist(
        self,
        server_id: str,
        user_id: str,
        result: DetectionResult,
        metadata: dict[str, Any],
        message_id: Optional[str] = None,
        channel_id: Optional[str] = None,
    ) -> None:
        context = {"server_id": server_id, "user_id": user_id}
        profile = result.profile
        try:
            await self._servers.ensure_server(server_id)
            await self._users.ensure_user(
                user_id,
                username=profile.username if profile else None,
                account_created_at=profile.account_created_at if profile else None,
                discriminator=profile.discriminator if profile else None,
            )
            await self._users.ensure_member(server_id, user_id, profile.joined_server_at if profile else None)
            event = await self._detections.create_detection_event(
                server_id=server_id,
                user_id=user_id,
                detection_type=result.detection_type,
                confidence=result.confidence,
                reasons=result.reasons,
                used_gpt=result.used_gpt,
                message_id=message_id,
                channel_id=channel_id,
                metadata={**metadata, "label": result.label},
            )
            result.detection_event_id = event.id
        except PersistenceError as e:
            observability.log_persistence_failure("create_detection_event", e, context)
            result.persistence_errors.append(f"detection event not saved: {e}")
            return

        try:
            await self._update_reputation(server_id, user_id, result)
        except PersistenceError as e:
            observability.log_persistence_failure("update_reputation", e, context)
            result.persistence_errors.append(f"reputation not updated: {e}")

    async def _update_reputation(self, server_id: str, user_id: str, result: DetectionResult) -> None:
        member = await self._users.ensure_member(server_id, user_id)
        current = member.reputation_score if member.reputation_score is not None else REPUTATION_DEFAULT
        if result.suspicious:
            updated = max(REPUTATION_MIN, current - REPUTATION_PENALTY_FACTOR * result.confidence)
        else:
            updated = min(REPUTATION_MAX, current + REPUTATION_REWARD)
        await self._users.update_reputation_score(user_id, updated, server_id=server_id)

        scores = await self._users.list_member_scores(user_id)
        if scores:
            await self._users.update_reputation_score(user_id, sum(scores) / len(scores))

    def _log(self, server_id: str, user_id: str, result: DetectionResult, started: float) -> None:
        observability.log_detection(
            server_id=server_id,
            user_id=user_id,
            label=result.label,
            confidence=result.confidence,
            classifier_status=result.classifier_status,
            detection_type=result.detection_type.value,
            duration_ms=(time.perf_counter() - started) * 1000,
        )
