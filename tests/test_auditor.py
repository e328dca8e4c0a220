from datetime import datetime, timezone

import pytest

from drasil.errors import NotFoundError, ValidationError
from drasil.moderation.auditor import AdminActionAuditor
from drasil.moderation.models import AdminAction, AdminActionData, AdminActionType, VerificationStatus

from conftest import ADMIN_ID, SERVER_ID, USER_ID


def make_action(**overrides):
    fields = dict(
        id="action-1",
        server_id=SERVER_ID,
        user_id=USER_ID,
        admin_id=ADMIN_ID,
        action_type=AdminActionType.BAN,
        action_at=datetime(2024, 3, 5, 14, 7, tzinfo=timezone.utc),
        previous_status=VerificationStatus.PENDING,
        new_status=VerificationStatus.BANNED,
        notes="banned in test",
    )
    fields.update(overrides)
    return AdminAction(**fields)


def test_summary_for_ban():
    summary = AdminActionAuditor.format_action_summary(make_action())
    assert summary == (
        "🔨 Banned by <@admin-1> at 2024-03-05 14:07 UTC\n"
        "Status changed from pending to banned\n"
        "Notes: banned in test"
    )


def test_summary_omits_unchanged_status_and_empty_notes():
    summary = AdminActionAuditor.format_action_summary(
        make_action(
            action_type=AdminActionType.CREATE_THREAD,
            new_status=VerificationStatus.PENDING,
            notes=None,
        )
    )
    assert summary == "📝 Verification thread created by <@admin-1> at 2024-03-05 14:07 UTC"


def test_summary_for_ban_without_prior_case():
    summary = AdminActionAuditor.format_action_summary(make_action(previous_status=None, notes=None))
    assert summary.endswith("Status changed from none to banned")


async def test_record_action_requires_known_server(auditor):
    with pytest.raises(NotFoundError, match=f"Server {SERVER_ID} not found"):
        await auditor.record_action(
            AdminActionData(SERVER_ID, USER_ID, ADMIN_ID, AdminActionType.VERIFY)
        )


async def test_record_action_requires_known_user(auditor, stores):
    await stores.servers.ensure_server(SERVER_ID)
    with pytest.raises(NotFoundError, match=f"User {USER_ID} not found"):
        await auditor.record_action(
            AdminActionData(SERVER_ID, USER_ID, ADMIN_ID, AdminActionType.VERIFY)
        )


async def test_record_action_validates_input(auditor):
    with pytest.raises(ValidationError):
        await auditor.record_action(AdminActionData(SERVER_ID, "", ADMIN_ID, AdminActionType.VERIFY))
    with pytest.raises(ValidationError):
        await auditor.record_action(AdminActionData(SERVER_ID, USER_ID, ADMIN_ID, "promote"))


async def test_recorded_actions_are_queryable(auditor, stores):
    await stores.servers.ensure_server(SERVER_ID)
    await stores.users.ensure_user(USER_ID)
    case = await stores.cases.create_verification_event(SERVER_ID, USER_ID)

    recorded = await auditor.record_action(
        AdminActionData(
            SERVER_ID,
            USER_ID,
            ADMIN_ID,
            AdminActionType.VERIFY,
            verification_event_id=case.id,
            previous_status=VerificationStatus.PENDING,
            new_status=VerificationStatus.VERIFIED,
        )
    )

    for found in (
        await auditor.actions_for_user(SERVER_ID, USER_ID),
        await auditor.actions_by_admin(ADMIN_ID),
        await auditor.actions_by_admin(ADMIN_ID, SERVER_ID),
        await auditor.actions_for_case(case.id),
    ):
        assert [a.id for a in found] == [recorded.id]
    assert (await auditor.actions_by_admin("someone-else")) == []
    assert found[0].new_status is VerificationStatus.VERIFIED
