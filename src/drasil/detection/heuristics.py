from __future__ import annotations

import time
from collections import deque
from typing import Iterable, Optional, Sequence

from ..constants import MAX_MESSAGE_THRESHOLD, MAX_MESSAGE_TIMEFRAME_SECONDS
from .models import HeuristicResult, ServerRules


class HeuristicScorer:
    """Cheap rule checks over one message.

    Pure and synchronous: the caller supplies the user's recent message
    timestamps (epoch seconds) and the server rules, nothing is looked up here.
    """

    def score(
        self,
        content: str,
        message_timestamps: Sequence[float],
        rules: ServerRules,
        now: Optional[float] = None,
    ) -> HeuristicResult:
        reasons: list[str] = []

        if self.is_frequency_suspicious(message_timestamps, rules, now):
            reasons.append(
                f"sent more than {rules.message_threshold} messages in {rules.timeframe_seconds} seconds"
            )

        matched = self.matched_keywords(content, rules.suspicious_keywords)
        if matched:
            reasons.append("message contains suspicious keywords: " + ", ".join(matched))

        return HeuristicResult("SUSPICIOUS" if reasons else "OK", reasons)

    @staticmethod
    def is_frequency_suspicious(
        message_timestamps: Sequence[float],
        rules: ServerRules,
        now: Optional[float] = None,
    ) -> bool:
        now = time.time() if now is None else now
        cutoff = now - rules.timeframe_seconds
        recent = sum(1 for ts in message_timestamps if ts >= cutoff)
        return recent > rules.message_threshold

    @staticmethod
    def matched_keywords(content: str, keywords: Iterable[str]) -> list[str]:
        lowered = (content or "").lower()
        return [kw for kw in keywords if kw and kw.lower() in lowered]


class MessageFrequencyTracker:
    """Trailing-window message timestamps per (server, user).

    The window must cover the longest timeframe a server can configure, or the
    frequency rule sees fewer messages than it should.
    """

    def __init__(
        self,
        max_window_seconds: int = MAX_MESSAGE_TIMEFRAME_SECONDS,
        max_per_user: int = MAX_MESSAGE_THRESHOLD * 2,
    ) -> None:
        self.max_window_seconds = max_window_seconds
        self.max_per_user = max_per_user
        self._messages: dict[tuple[str, str], deque[float]] = {}

    def record(self, server_id: str, user_id: str, now: Optional[float] = None) -> list[float]:
        """Append a message timestamp and return the user's window, oldest first."""
        now = time.time() if now is None else now
        key = (server_id, user_id)
        window = self._messages.get(key)
        if window is None:
            window = deque(maxlen=self.max_per_user)
            self._messages[key] = window
        window.append(now)
        while window and (now - window[0]) > self.max_window_seconds:
            window.popleft()
        return list(window)

    def timestamps(self, server_id: str, user_id: str) -> list[float]:
        return list(self._messages.get((server_id, user_id), ()))

    def prune(self, now: Optional[float] = None) -> int:
        """Drop users whose newest message fell out of the window."""
        now = time.time() if now is None else now
        stale = [
            key for key, window in self._messages.items()
            if not window or (now - window[-1]) > self.max_window_seconds
        ]
        for key in stale:
            self._messages.pop(key, None)
        return len(stale)

    def __len__(self) -> int:
        return len(self._messages)
