from .models import (
    AdminAction,
    AdminActionData,
    AdminActionType,
    ModerationOutcome,
    VerificationEvent,
    VerificationStatus,
)

__all__ = [
    "AdminAction",
    "AdminActionData",
    "AdminActionType",
    "ModerationOutcome",
    "VerificationEvent",
    "VerificationStatus",
]
