from .admin_actions_store import AdminActionsStore
from .detection_events_store import DetectionEventsStore
from .servers_store import ServersStore
from .users_store import UsersStore
from .verification_events_store import VerificationEventsStore

__all__ = [
    "AdminActionsStore",
    "DetectionEventsStore",
    "ServersStore",
    "UsersStore",
    "VerificationEventsStore",
]
