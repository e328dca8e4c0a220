from __future__ import annotations

from datetime import datetime
from typing import Optional, Sequence

from ..detection.models import DetectionEvent, utcnow
from .auditor import AdminActionAuditor
from .models import AdminAction, VerificationEvent


def _ts(value: datetime) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S UTC")


def format_detection_history(
    user_id: str,
    events: Sequence[DetectionEvent],
    server_id: str,
    generated_at: Optional[datetime] = None,
) -> str:
    ordered = sorted(events, key=lambda e: e.detected_at, reverse=True)
    lines = [
        f"Detection History for User <@{user_id}>",
        f"Generated at {_ts(generated_at or utcnow())}",
        "",
        "=== Summary ===",
        f"Total Events: {len(ordered)}",
        f"Verified: {sum(1 for e in ordered if e.admin_action == 'Verified')}",
        f"Banned: {sum(1 for e in ordered if e.admin_action == 'Banned')}",
        f"Pending: {sum(1 for e in ordered if not e.admin_action)}",
        "",
        "=== Detailed History ===",
        "",
    ]
    for index, event in enumerate(ordered, start=1):
        lines.append(f"[Event {index}]")
        lines.append(f"Time: {_ts(event.detected_at)}")
        lines.append(f"Type: {event.detection_type.value}")
        lines.append(f"Confidence: {event.confidence * 100:.0f}% ({event.confidence_level.value})")
        if event.reasons:
            lines.append("Reasons: " + ", ".join(event.reasons))
        if event.message_id and event.channel_id:
            lines.append(
                f"Message Link: https://discord.com/channels/{server_id}/{event.channel_id}/{event.message_id}"
            )
        if event.admin_action and event.admin_action_by and event.admin_action_at:
            lines.append(
                f"Resolution: {event.admin_action} by <@{event.admin_action_by}> at {_ts(event.admin_action_at)}"
            )
        content = event.metadata.get("content")
        if content:
            lines.append(f"Message Content: {content}")
        lines.append("")
    return "\n".join(lines)


def format_verification_history(
    user_id: str,
    cases: Sequence[tuple[VerificationEvent, Sequence[AdminAction]]],
) -> str:
    """Plain-text case history, one block per case with its audit entries oldest first."""
    lines = [f"Verification History for <@{user_id}>", ""]
    for case, actions in cases:
        lines.append(f"=== {_ts(case.created_at)} ===")
        lines.append(f"Status: {case.status.value}")
        if case.thread_id:
            lines.append(f"Thread: <#{case.thread_id}>")
        if case.notes:
            lines.append(f"Notes: {case.notes}")
        if actions:
            lines.append("")
            lines.append("Actions:")
            for action in sorted(actions, key=lambda a: a.action_at):
                summary = AdminActionAuditor.format_action_summary(action)
                lines.append("* " + summary.replace("\n", "\n  "))
        lines.append("")
    return "\n".join(lines)
