from .fakes import (
    FakeClassifier,
    RecordingEnforcementGateway,
    RecordingNotificationGateway,
    StaticRulesProvider,
)

__all__ = [
    "FakeClassifier",
    "RecordingEnforcementGateway",
    "RecordingNotificationGateway",
    "StaticRulesProvider",
]
