from __future__ import annotations

import os
from dataclasses import dataclass, field


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "y", "on"}


def _get_str(name: str, default: str) -> str:
    return os.getenv(name, default).strip() or default


def _get_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    return tuple(part.strip() for part in raw.split(",") if part.strip())


DEFAULT_SUSPICIOUS_KEYWORDS: tuple[str, ...] = ("free nitro", "discord nitro", "claim your prize")


@dataclass(frozen=True)
class Settings:
    token: str
    sqlite_path: str = "drasil.sqlite3"
    log_level: str = "INFO"
    cache_default_ttl_seconds: int = 120
    message_content_intent: bool = True

    # Profile classifier
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    classifier_timeout_seconds: float = 10.0

    # Heuristic defaults; servers may override them in their settings
    default_message_threshold: int = 5
    default_message_timeframe_seconds: int = 10
    default_suspicious_keywords: tuple[str, ...] = field(default=DEFAULT_SUSPICIOUS_KEYWORDS)
    default_min_confidence_threshold: int = 0
    default_auto_restrict: bool = True

    # How far back a prior high-confidence detection still counts against a user
    recent_history_days: int = 7

    # Retention
    detection_retention_days: int = 30
    retention_interval_seconds: int = 21600

    # Names used to locate platform objects
    restricted_role_name: str = "Restricted"
    admin_channel_name: str = "drasil-admin"
    verification_channel_name: str = "verification"


def load_settings(*, require_token: bool = True) -> Settings:
    token = os.getenv("DISCORD_TOKEN", "").strip()
    if require_token and not token:
        raise RuntimeError("DISCORD_TOKEN is required")
    return Settings(
        token=token,
        sqlite_path=_get_str("SQLITE_PATH", "drasil.sqlite3"),
        log_level=_get_str("LOG_LEVEL", "INFO"),
        cache_default_ttl_seconds=_get_int("CACHE_DEFAULT_TTL_SECONDS", 120),
        message_content_intent=_get_bool("MESSAGE_CONTENT_INTENT", True),
        openai_api_key=os.getenv("OPENAI_API_KEY", "").strip(),
        openai_model=_get_str("OPENAI_MODEL", "gpt-4o-mini"),
        classifier_timeout_seconds=_get_float("CLASSIFIER_TIMEOUT_SECONDS", 10.0),
        default_message_threshold=_get_int("DEFAULT_MESSAGE_THRESHOLD", 5),
        default_message_timeframe_seconds=_get_int("DEFAULT_MESSAGE_TIMEFRAME_SECONDS", 10),
        default_suspicious_keywords=_get_list("DEFAULT_SUSPICIOUS_KEYWORDS", DEFAULT_SUSPICIOUS_KEYWORDS),
        default_min_confidence_threshold=_get_int("DEFAULT_MIN_CONFIDENCE_THRESHOLD", 0),
        default_auto_restrict=_get_bool("DEFAULT_AUTO_RESTRICT", True),
        recent_history_days=_get_int("RECENT_HISTORY_DAYS", 7),
        detection_retention_days=_get_int("DETECTION_RETENTION_DAYS", 30),
        retention_interval_seconds=_get_int("RETENTION_INTERVAL_SECONDS", 21600),
        restricted_role_name=_get_str("RESTRICTED_ROLE_NAME", "Restricted"),
        admin_channel_name=_get_str("ADMIN_CHANNEL_NAME", "drasil-admin"),
        verification_channel_name=_get_str("VERIFICATION_CHANNEL_NAME", "verification"),
    )
