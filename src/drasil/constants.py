from __future__ import annotations

from typing import Final

# Discord limits
MAX_MESSAGE_LENGTH: Final[int] = 2000

# Bot configuration
CACHE_TTL_SECONDS: Final[int] = 120

# Frequency heuristic
MAX_MESSAGE_THRESHOLD: Final[int] = 100
MAX_MESSAGE_TIMEFRAME_SECONDS: Final[int] = 3600

# Suspicion scoring
RECENT_SUSPICION_WEIGHT: Final[float] = 0.4
HEURISTIC_WEIGHT: Final[float] = 0.5
NEW_ACCOUNT_WEIGHT: Final[float] = 0.2
NEW_MEMBER_WEIGHT: Final[float] = 0.1
CLASSIFIER_SUSPICIOUS_SCORE: Final[float] = 0.9
CLASSIFIER_LEGITIMATE_DISCOUNT: Final[float] = 0.3
DECISION_BOUNDARY: Final[float] = 0.5
BORDERLINE_LOWER: Final[float] = 0.3
BORDERLINE_UPPER: Final[float] = 0.7

# Join scoring
JOIN_NEW_ACCOUNT_WEIGHT: Final[float] = 0.4
JOIN_CLASSIFIER_WEIGHT: Final[float] = 0.7

# Age thresholds (days)
NEW_ACCOUNT_THRESHOLD_DAYS: Final[int] = 7
NEW_SERVER_MEMBER_THRESHOLD_DAYS: Final[int] = 3

# Confidence buckets
CONFIDENCE_MEDIUM: Final[float] = 0.4
CONFIDENCE_HIGH: Final[float] = 0.7

# Reputation
REPUTATION_MIN: Final[float] = 0.0
REPUTATION_MAX: Final[float] = 100.0
REPUTATION_DEFAULT: Final[float] = 50.0
REPUTATION_PENALTY_FACTOR: Final[float] = 20.0
REPUTATION_REWARD: Final[float] = 5.0

# Classifier prompt
CLASSIFIER_HISTORY_SAMPLE: Final[int] = 10

# Admin action summaries
ACTION_ICONS = {
    "verify": "✅",
    "reject": "❌",
    "ban": "🔨",
    "reopen": "🔄",
    "create_thread": "📝",
}
