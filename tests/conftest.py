from __future__ import annotations

from datetime import timedelta
from types import SimpleNamespace

import pytest
import pytest_asyncio

from drasil.config import Settings
from drasil.database import initialize_database
from drasil.detection.models import ClassifierVerdict, UserProfile, utcnow
from drasil.detection.orchestrator import DetectionOrchestrator
from drasil.moderation.auditor import AdminActionAuditor
from drasil.moderation.coordinator import ModerationActionCoordinator
from drasil.moderation.lifecycle import VerificationLifecycle
from drasil.observability import observability
from drasil.services import (
    AdminActionsStore,
    DetectionEventsStore,
    ServersStore,
    UsersStore,
    VerificationEventsStore,
)
from drasil.testing import (
    FakeClassifier,
    RecordingEnforcementGateway,
    RecordingNotificationGateway,
)

SERVER_ID = "server-1"
USER_ID = "user-1"
ADMIN_ID = "admin-1"


@pytest.fixture(autouse=True)
def reset_observability():
    observability.reset_counters()
    yield


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        token="test-token",
        sqlite_path=str(tmp_path / "drasil.sqlite3"),
        default_suspicious_keywords=("free nitro", "claim your prize"),
    )


@pytest_asyncio.fixture
async def stores(settings):
    ns = SimpleNamespace(
        servers=ServersStore(settings.sqlite_path, settings),
        users=UsersStore(settings.sqlite_path),
        detections=DetectionEventsStore(settings.sqlite_path),
        cases=VerificationEventsStore(settings.sqlite_path),
        actions=AdminActionsStore(settings.sqlite_path),
    )
    await initialize_database(
        settings.sqlite_path, [ns.servers, ns.users, ns.detections, ns.cases, ns.actions]
    )
    return ns


@pytest.fixture
def classifier() -> FakeClassifier:
    return FakeClassifier()


@pytest.fixture
def orchestrator(stores, classifier) -> DetectionOrchestrator:
    return DetectionOrchestrator(
        rules=stores.servers,
        classifier=classifier,
        detections=stores.detections,
        users=stores.users,
        servers=stores.servers,
    )


@pytest.fixture
def enforcement() -> RecordingEnforcementGateway:
    return RecordingEnforcementGateway()


@pytest.fixture
def notifications() -> RecordingNotificationGateway:
    return RecordingNotificationGateway()


@pytest.fixture
def lifecycle(stores) -> VerificationLifecycle:
    return VerificationLifecycle(stores.cases)


@pytest.fixture
def auditor(stores) -> AdminActionAuditor:
    return AdminActionAuditor(stores.actions, stores.servers, stores.users)


@pytest.fixture
def coordinator(stores, lifecycle, auditor, enforcement, notifications) -> ModerationActionCoordinator:
    return ModerationActionCoordinator(
        lifecycle=lifecycle,
        auditor=auditor,
        cases=stores.cases,
        detections=stores.detections,
        users=stores.users,
        rules=stores.servers,
        enforcement=enforcement,
        notifications=notifications,
    )


def make_profile(account_days: float = 400, joined_days: float = 100, **kwargs) -> UserProfile:
    now = utcnow()
    return UserProfile(
        user_id=kwargs.pop("user_id", USER_ID),
        username=kwargs.pop("username", "someone"),
        account_created_at=now - timedelta(days=account_days),
        joined_server_at=now - timedelta(days=joined_days),
        **kwargs,
    )


SUSPICIOUS_VERDICT = ClassifierVerdict(result="SUSPICIOUS", reasons=["classifier flagged profile as suspicious"])
OK_VERDICT = ClassifierVerdict(result="OK", reasons=["classifier found profile normal"])
