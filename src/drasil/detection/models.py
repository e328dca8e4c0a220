from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional

from ..constants import CONFIDENCE_HIGH, CONFIDENCE_MEDIUM

Label = Literal["OK", "SUSPICIOUS"]
ClassifierStatus = Literal["not_used", "ok", "unavailable"]


class DetectionType(str, Enum):
    MESSAGE_FREQUENCY = "message_frequency"
    SUSPICIOUS_CONTENT = "suspicious_content"
    GPT_ANALYSIS = "gpt_analysis"
    NEW_ACCOUNT = "new_account"
    PATTERN_MATCH = "pattern_match"
    USER_REPORT = "user_report"


class ConfidenceLevel(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


def confidence_level(confidence: float) -> ConfidenceLevel:
    """Bucket a confidence in [0, 1]: Low < 0.4 <= Medium < 0.7 <= High."""
    if confidence >= CONFIDENCE_HIGH:
        return ConfidenceLevel.HIGH
    if confidence >= CONFIDENCE_MEDIUM:
        return ConfidenceLevel.MEDIUM
    return ConfidenceLevel.LOW


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ServerRules:
    """Per-server detection knobs as resolved by a RulesProvider."""

    server_id: str
    message_threshold: int
    timeframe_seconds: int
    suspicious_keywords: tuple[str, ...]
    min_confidence_threshold: int = 0
    auto_restrict: bool = True


@dataclass(frozen=True)
class HeuristicResult:
    result: Label
    reasons: list[str]

    @property
    def suspicious(self) -> bool:
        return self.result == "SUSPICIOUS"


@dataclass
class UserProfile:
    """What the bot knows about a member when it scores them."""

    user_id: str
    username: str
    account_created_at: Optional[datetime] = None
    joined_server_at: Optional[datetime] = None
    recent_messages: list[str] = field(default_factory=list)
    nickname: Optional[str] = None
    discriminator: Optional[str] = None


@dataclass(frozen=True)
class ClassifierRequest:
    user_id: str
    username: str
    account_age_days: Optional[int]
    server_join_date: Optional[datetime]
    message_history_sample: list[str]
    nickname: Optional[str] = None
    discriminator: Optional[str] = None


@dataclass(frozen=True)
class ClassifierVerdict:
    result: Label
    reasons: list[str]


@dataclass
class DetectionResult:
    label: Label
    confidence: float
    reasons: list[str]
    detection_type: DetectionType
    trigger_content: str
    score: float
    used_gpt: bool = False
    classifier_status: ClassifierStatus = "not_used"
    detection_event_id: Optional[str] = None
    profile: Optional[UserProfile] = None
    # Best-effort write failures; never affect label or confidence
    persistence_errors: list[str] = field(default_factory=list)

    @property
    def confidence_level(self) -> ConfidenceLevel:
        return confidence_level(self.confidence)

    @property
    def suspicious(self) -> bool:
        return self.label == "SUSPICIOUS"

    @property
    def persisted(self) -> bool:
        return self.detection_event_id is not None


@dataclass(frozen=True)
class DetectionEvent:
    id: str
    server_id: str
    user_id: str
    detection_type: DetectionType
    confidence: float
    reasons: list[str]
    detected_at: datetime
    used_gpt: bool = False
    message_id: Optional[str] = None
    channel_id: Optional[str] = None
    thread_id: Optional[str] = None
    latest_verification_event_id: Optional[str] = None
    admin_action: Optional[str] = None
    admin_action_by: Optional[str] = None
    admin_action_at: Optional[datetime] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def confidence_level(self) -> ConfidenceLevel:
        return confidence_level(self.confidence)
