import time
from datetime import timedelta

import pytest

from drasil.detection.heuristics import MessageFrequencyTracker
from drasil.detection.models import DetectionType, utcnow
from drasil.errors import ValidationError
from drasil.services.retention import RetentionTask

from conftest import SERVER_ID, USER_ID


async def add_event(stores, age_days):
    return await stores.detections.create_detection_event(
        server_id=SERVER_ID,
        user_id=USER_ID,
        detection_type=DetectionType.SUSPICIOUS_CONTENT,
        confidence=0.5,
        reasons=["test"],
        detected_at=utcnow() - timedelta(days=age_days),
    )


async def test_run_once_deletes_only_expired_events(stores):
    await stores.servers.ensure_server(SERVER_ID)
    await stores.users.ensure_user(USER_ID)
    await add_event(stores, 45)
    kept = await add_event(stores, 2)

    deleted = await RetentionTask(stores.detections, retention_days=30).run_once()

    assert deleted == 1
    remaining = await stores.detections.find_detection_events_by_server_and_user(SERVER_ID, USER_ID)
    assert [e.id for e in remaining] == [kept.id]


async def test_negative_retention_is_rejected(stores):
    with pytest.raises(ValidationError):
        await stores.detections.delete_detection_events_older_than(-1)


async def test_start_and_stop(stores):
    task = RetentionTask(stores.detections, retention_days=30, interval_seconds=3600)
    task.start()
    assert task.running
    await task.stop()
    assert not task.running


async def test_run_once_prunes_idle_members_from_tracker(stores):
    tracker = MessageFrequencyTracker(max_window_seconds=60)
    tracker.record(SERVER_ID, USER_ID, now=time.time() - 600)
    tracker.record(SERVER_ID, "user-2")

    await RetentionTask(stores.detections, retention_days=30, tracker=tracker).run_once()

    assert len(tracker) == 1
