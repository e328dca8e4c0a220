from datetime import datetime, timezone

from drasil.detection.models import DetectionEvent, DetectionType
from drasil.moderation.history import format_detection_history, format_verification_history
from drasil.moderation.models import AdminAction, AdminActionType, VerificationEvent, VerificationStatus

from conftest import ADMIN_ID, SERVER_ID, USER_ID

T0 = datetime(2024, 3, 1, 9, 30, tzinfo=timezone.utc)
T1 = datetime(2024, 3, 2, 10, 0, tzinfo=timezone.utc)


def test_detection_history_report():
    events = [
        DetectionEvent(
            id="d1",
            server_id=SERVER_ID,
            user_id=USER_ID,
            detection_type=DetectionType.SUSPICIOUS_CONTENT,
            confidence=0.8,
            reasons=["message contains suspicious keywords: nitro"],
            detected_at=T0,
            message_id="m1",
            channel_id="c1",
            admin_action="Verified",
            admin_action_by=ADMIN_ID,
            admin_action_at=T1,
            metadata={"content": "free nitro"},
        ),
        DetectionEvent(
            id="d2",
            server_id=SERVER_ID,
            user_id=USER_ID,
            detection_type=DetectionType.USER_REPORT,
            confidence=1.0,
            reasons=["reported by <@r1>"],
            detected_at=T1,
        ),
    ]

    report = format_detection_history(USER_ID, events, SERVER_ID, generated_at=T1)

    assert report.startswith("Detection History for User <@user-1>\nGenerated at 2024-03-02 10:00:00 UTC")
    assert "Total Events: 2\nVerified: 1\nBanned: 0\nPending: 1" in report
    # newest first
    assert report.index("Type: user_report") < report.index("Type: suspicious_content")
    assert "Confidence: 80% (High)" in report
    assert f"Message Link: https://discord.com/channels/{SERVER_ID}/c1/m1" in report
    assert "Resolution: Verified by <@admin-1> at 2024-03-02 10:00:00 UTC" in report
    assert "Message Content: free nitro" in report


def test_verification_history_lists_actions_oldest_first():
    case = VerificationEvent(
        id="v1",
        server_id=SERVER_ID,
        user_id=USER_ID,
        status=VerificationStatus.BANNED,
        created_at=T0,
        updated_at=T1,
        thread_id="t1",
    )
    actions = [
        AdminAction(
            id="a2",
            server_id=SERVER_ID,
            user_id=USER_ID,
            admin_id=ADMIN_ID,
            action_type=AdminActionType.BAN,
            action_at=T1,
            previous_status=VerificationStatus.PENDING,
            new_status=VerificationStatus.BANNED,
        ),
        AdminAction(
            id="a1",
            server_id=SERVER_ID,
            user_id=USER_ID,
            admin_id=ADMIN_ID,
            action_type=AdminActionType.CREATE_THREAD,
            action_at=T0,
            previous_status=VerificationStatus.PENDING,
            new_status=VerificationStatus.PENDING,
        ),
    ]

    report = format_verification_history(USER_ID, [(case, actions)])

    assert "=== 2024-03-01 09:30:00 UTC ===" in report
    assert "Status: banned" in report
    assert "Thread: <#t1>" in report
    assert report.index("Verification thread created by") < report.index("Banned by")
    assert "  Status changed from pending to banned" in report
