from drasil.detection.heuristics import HeuristicScorer, MessageFrequencyTracker
from drasil.detection.models import ServerRules

RULES = ServerRules(
    server_id="server-1",
    message_threshold=3,
    timeframe_seconds=10,
    suspicious_keywords=("free nitro", "claim your prize"),
)


def test_clean_message_is_ok():
    result = HeuristicScorer().score("hello there", [100.0], RULES, now=100.0)
    assert result.result == "OK"
    assert result.reasons == []


def test_keyword_match_is_case_insensitive():
    result = HeuristicScorer().score("Get FREE NITRO now", [100.0], RULES, now=100.0)
    assert result.suspicious
    assert result.reasons == ["message contains suspicious keywords: free nitro"]


def test_frequency_needs_more_than_threshold():
    scorer = HeuristicScorer()
    at_threshold = [95.0, 97.0, 99.0]
    assert not scorer.score("hi", at_threshold, RULES, now=100.0).suspicious

    over = [95.0, 97.0, 98.0, 99.0]
    result = scorer.score("hi", over, RULES, now=100.0)
    assert result.suspicious
    assert result.reasons == ["sent more than 3 messages in 10 seconds"]


def test_old_timestamps_fall_outside_timeframe():
    timestamps = [50.0, 60.0, 70.0, 99.0]
    assert not HeuristicScorer.is_frequency_suspicious(timestamps, RULES, now=100.0)


def test_frequency_and_keywords_both_reported():
    result = HeuristicScorer().score("claim your prize", [96.0, 97.0, 98.0, 99.0], RULES, now=100.0)
    assert len(result.reasons) == 2


def test_tracker_keeps_trailing_window_per_user():
    tracker = MessageFrequencyTracker(max_window_seconds=60)
    tracker.record("s", "u", now=0.0)
    tracker.record("s", "u", now=30.0)
    window = tracker.record("s", "u", now=90.0)
    assert window == [30.0, 90.0]
    assert tracker.timestamps("s", "other") == []


def test_tracker_prunes_idle_users():
    tracker = MessageFrequencyTracker(max_window_seconds=60)
    tracker.record("s", "a", now=0.0)
    tracker.record("s", "b", now=100.0)
    assert tracker.prune(now=120.0) == 1
    assert len(tracker) == 1


def test_tracker_caps_entries_per_user():
    tracker = MessageFrequencyTracker(max_window_seconds=600, max_per_user=5)
    for i in range(10):
        tracker.record("s", "u", now=float(i))
    assert tracker.timestamps("s", "u") == [5.0, 6.0, 7.0, 8.0, 9.0]


def test_default_tracker_covers_long_server_timeframes():
    rules = ServerRules("server-1", message_threshold=5, timeframe_seconds=600, suspicious_keywords=())
    tracker = MessageFrequencyTracker()
    start = 1_000_000.0
    for i in range(6):
        window = tracker.record("s", "u", now=start + i * 70)

    assert len(window) == 6
    result = HeuristicScorer().score("hi", window, rules, now=start + 350)
    assert result.suspicious
    assert result.reasons == ["sent more than 5 messages in 600 seconds"]
