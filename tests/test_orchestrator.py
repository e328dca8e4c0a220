import pytest

from drasil.detection.models import ConfidenceLevel, DetectionType, ServerRules
from drasil.detection.orchestrator import CLASSIFIER_UNAVAILABLE_REASON, DetectionOrchestrator
from drasil.errors import PersistenceError
from drasil.observability import observability
from drasil.services import DetectionEventsStore, ServersStore
from drasil.testing import FakeClassifier, StaticRulesProvider

from conftest import OK_VERDICT, SERVER_ID, SUSPICIOUS_VERDICT, USER_ID, make_profile


class BrokenDetectionsStore(DetectionEventsStore):
    async def create_detection_event(self, **kwargs):
        raise PersistenceError("disk full")

    async def find_detection_events_by_server_and_user(self, *args, **kwargs):
        raise PersistenceError("disk full")


class BrokenServersStore(ServersStore):
    async def find_server_by_id(self, server_id):
        raise PersistenceError("database is locked")


class CrashingClassifier(FakeClassifier):
    async def classify(self, request):
        self.requests.append(request)
        raise RuntimeError("unexpected payload")


def build(stores, classifier, detections=None):
    return DetectionOrchestrator(
        rules=stores.servers,
        classifier=classifier,
        detections=detections or stores.detections,
        users=stores.users,
        servers=stores.servers,
    )


async def test_clean_message_from_established_member(orchestrator, classifier, stores):
    result = await orchestrator.detect_message(SERVER_ID, USER_ID, "good morning", make_profile())

    assert result.label == "OK"
    assert result.score == 0.0
    assert result.confidence == pytest.approx(1.0)
    assert result.classifier_status == "not_used"
    assert classifier.calls == 0
    assert result.persisted

    member = await stores.users.find_member(SERVER_ID, USER_ID)
    assert member.reputation_score == pytest.approx(55.0)


async def test_borderline_keyword_message_consults_classifier(stores):
    classifier = FakeClassifier(OK_VERDICT)
    result = await build(stores, classifier).detect_message(
        SERVER_ID, USER_ID, "free nitro here", make_profile(recent_messages=["hi"])
    )

    assert classifier.calls == 1
    assert classifier.requests[0].message_history_sample == ["hi", "free nitro here"]
    assert result.label == "OK"
    assert result.score == pytest.approx(0.2)
    assert result.used_gpt
    assert result.detection_type is DetectionType.GPT_ANALYSIS
    assert result.reasons[-1] == "classifier indicates legitimate"


async def test_classifier_suspicious_overrides_score(stores):
    result = await build(stores, FakeClassifier(SUSPICIOUS_VERDICT)).detect_message(
        SERVER_ID, USER_ID, "claim your prize", make_profile()
    )

    assert result.label == "SUSPICIOUS"
    assert result.score == pytest.approx(0.9)
    assert result.confidence == pytest.approx(0.8)
    assert result.confidence_level is ConfidenceLevel.HIGH
    assert "classifier flagged profile as suspicious" in result.reasons


async def test_classifier_failure_falls_back_to_heuristics(stores):
    classifier = FakeClassifier(fail=True)
    result = await build(stores, classifier).detect_message(
        SERVER_ID, USER_ID, "free nitro", make_profile()
    )

    assert classifier.calls == 1
    assert result.label == "SUSPICIOUS"
    assert result.score == pytest.approx(0.5)
    assert result.classifier_status == "unavailable"
    assert not result.used_gpt
    assert CLASSIFIER_UNAVAILABLE_REASON in result.reasons
    assert result.detection_type is DetectionType.SUSPICIOUS_CONTENT


async def test_missing_classifier_is_reported_unavailable(stores):
    result = await build(stores, None).detect_message(SERVER_ID, USER_ID, "free nitro", make_profile())
    assert result.classifier_status == "unavailable"
    assert result.label == "SUSPICIOUS"


async def test_no_profile_skips_classifier(orchestrator, classifier):
    result = await orchestrator.detect_message(SERVER_ID, USER_ID, "free nitro")
    assert classifier.calls == 0
    assert result.label == "SUSPICIOUS"
    assert result.detection_type is DetectionType.SUSPICIOUS_CONTENT


async def test_message_flood_is_frequency_detection(orchestrator):
    results = [await orchestrator.detect_message(SERVER_ID, USER_ID, f"msg {i}") for i in range(6)]

    assert all(r.label == "OK" for r in results[:5])
    assert results[-1].label == "SUSPICIOUS"
    assert results[-1].detection_type is DetectionType.MESSAGE_FREQUENCY
    assert results[-1].reasons == ["sent more than 5 messages in 10 seconds"]


async def test_new_account_and_member_trigger_classifier(orchestrator, classifier):
    result = await orchestrator.detect_message(
        SERVER_ID, USER_ID, "hello", make_profile(account_days=2, joined_days=1)
    )

    assert classifier.calls == 1
    assert "new account" in result.reasons
    assert "recently joined" in result.reasons
    assert result.score == pytest.approx(0.0)


async def test_recent_high_confidence_detection_raises_score(orchestrator, stores):
    await stores.servers.ensure_server(SERVER_ID)
    await stores.users.ensure_user(USER_ID)
    await stores.detections.create_detection_event(
        server_id=SERVER_ID,
        user_id=USER_ID,
        detection_type=DetectionType.SUSPICIOUS_CONTENT,
        confidence=0.8,
        reasons=["earlier"],
    )

    result = await orchestrator.detect_message(SERVER_ID, USER_ID, "hello again")

    assert result.reasons[0] == "recent suspicious activity"
    assert result.score == pytest.approx(0.4)
    assert result.label == "OK"


async def test_persistence_failure_does_not_change_verdict(stores, settings):
    broken = BrokenDetectionsStore(settings.sqlite_path)
    result = await build(stores, FakeClassifier(SUSPICIOUS_VERDICT), broken).detect_message(
        SERVER_ID, USER_ID, "free nitro", make_profile()
    )

    assert result.label == "SUSPICIOUS"
    assert result.score == pytest.approx(0.9)
    assert result.detection_event_id is None
    assert not result.persisted
    assert any("history lookup failed" in e for e in result.persistence_errors)
    assert any("detection event not saved" in e for e in result.persistence_errors)


async def test_suspicious_detection_lowers_reputation(stores):
    orchestrator = build(stores, FakeClassifier(SUSPICIOUS_VERDICT))
    await orchestrator.detect_message(SERVER_ID, USER_ID, "free nitro", make_profile())

    member = await stores.users.find_member(SERVER_ID, USER_ID)
    user = await stores.users.find_user_by_id(USER_ID)
    assert member.reputation_score == pytest.approx(34.0)
    assert user.global_reputation_score == pytest.approx(34.0)


async def test_join_from_new_account_flagged_by_classifier(stores):
    result = await build(stores, FakeClassifier(SUSPICIOUS_VERDICT)).detect_new_join(
        SERVER_ID, USER_ID, make_profile(account_days=1, joined_days=0)
    )

    assert result.reasons == ["classifier flagged profile as suspicious", "new account"]
    assert result.score == pytest.approx(1.0)
    assert result.confidence == pytest.approx(1.0)
    assert result.detection_type is DetectionType.NEW_ACCOUNT
    assert result.trigger_content == "server join"

    events = await stores.detections.find_detection_events_by_server_and_user(SERVER_ID, USER_ID)
    assert events[0].metadata["join"] is True


async def test_join_from_old_account_is_ok(orchestrator, classifier):
    result = await orchestrator.detect_new_join(SERVER_ID, USER_ID, make_profile())
    assert classifier.calls == 1
    assert result.label == "OK"


async def test_join_with_classifier_down_scores_account_age_only(stores):
    result = await build(stores, FakeClassifier(fail=True)).detect_new_join(
        SERVER_ID, USER_ID, make_profile(account_days=3)
    )
    assert result.reasons == [CLASSIFIER_UNAVAILABLE_REASON, "new account"]
    assert result.label == "OK"
    assert result.score == pytest.approx(0.4)


async def test_user_report_is_forced_suspicious(orchestrator, stores):
    result = await orchestrator.record_user_report(SERVER_ID, USER_ID, "reporter-9", "spamming DMs")

    assert result.label == "SUSPICIOUS"
    assert result.confidence == 1.0
    assert result.detection_type is DetectionType.USER_REPORT
    assert result.reasons == ["reported by <@reporter-9>", "report reason: spamming DMs"]

    event = await stores.detections.find_by_id(result.detection_event_id)
    assert event.metadata["type"] == "user_report"


async def test_manual_flag_is_pattern_match(orchestrator, stores):
    result = await orchestrator.record_manual_flag(SERVER_ID, USER_ID, "admin-1")

    assert result.detection_type is DetectionType.PATTERN_MATCH
    assert result.reasons == ["flagged by <@admin-1>"]
    event = await stores.detections.find_by_id(result.detection_event_id)
    assert event.metadata["type"] == "admin_flag"


async def test_earlier_ok_assessments_do_not_count_as_suspicious(orchestrator):
    await orchestrator.detect_message(SERVER_ID, USER_ID, "good morning", make_profile())
    result = await orchestrator.detect_message(SERVER_ID, USER_ID, "how is everyone", make_profile())

    assert "recent suspicious activity" not in result.reasons
    assert result.score == 0.0


async def test_injected_rules_replace_server_settings(stores, classifier):
    orchestrator = DetectionOrchestrator(
        rules=StaticRulesProvider(ServerRules(SERVER_ID, 10, 60, ("crypto airdrop",))),
        classifier=classifier,
        detections=stores.detections,
        users=stores.users,
        servers=stores.servers,
    )

    stock = await orchestrator.detect_message(SERVER_ID, USER_ID, "free nitro", make_profile())
    custom = await orchestrator.detect_message(SERVER_ID, USER_ID, "join the crypto airdrop", make_profile())

    assert not any("suspicious keywords" in r for r in stock.reasons)
    assert "message contains suspicious keywords: crypto airdrop" in custom.reasons


async def test_unreadable_server_settings_fall_back_to_defaults(stores, settings):
    orchestrator = DetectionOrchestrator(
        rules=BrokenServersStore(settings.sqlite_path, settings),
        classifier=FakeClassifier(fail=True),
        detections=stores.detections,
        users=stores.users,
        servers=stores.servers,
    )

    result = await orchestrator.detect_message(SERVER_ID, USER_ID, "free nitro", make_profile())

    assert result.label == "SUSPICIOUS"
    assert "message contains suspicious keywords: free nitro" in result.reasons
    assert observability.get_health_summary()["persistence_failures"] >= 1


async def test_unexpected_classifier_error_is_treated_as_unavailable(stores):
    classifier = CrashingClassifier()
    result = await build(stores, classifier).detect_message(SERVER_ID, USER_ID, "free nitro", make_profile())

    assert classifier.calls == 1
    assert result.classifier_status == "unavailable"
    assert CLASSIFIER_UNAVAILABLE_REASON in result.reasons
    assert result.label == "SUSPICIOUS"
