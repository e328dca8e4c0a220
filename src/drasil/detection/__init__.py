from .heuristics import HeuristicScorer, MessageFrequencyTracker
from .models import (
    ConfidenceLevel,
    DetectionEvent,
    DetectionResult,
    DetectionType,
    ServerRules,
    UserProfile,
    confidence_level,
)

__all__ = [
    "ConfidenceLevel",
    "DetectionEvent",
    "DetectionResult",
    "DetectionType",
    "HeuristicScorer",
    "MessageFrequencyTracker",
    "ServerRules",
    "UserProfile",
    "confidence_level",
]
