from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

log = logging.getLogger("drasil.observability")


class LogLevel(Enum):
    """Structured log levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class ActionType(Enum):
    """Action types for structured logging."""
    COMMAND = "command"
    DETECTION = "detection"
    CLASSIFIER_CALL = "classifier_call"
    TRANSITION = "transition"
    ENFORCEMENT = "enforcement"
    PERSISTENCE = "persistence"
    RETENTION = "retention"
    ERROR = "error"
    STARTUP = "startup"


@dataclass
class StructuredLogEntry:
    """Structured log entry with context."""
    timestamp: datetime
    level: LogLevel
    action: ActionType
    server_id: str | None
    user_id: str | None
    message: str
    details: dict[str, Any]
    duration_ms: float | None = None
    success: bool | None = None
    error_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        data["level"] = self.level.value
        data["action"] = self.action.value
        return data


class ObservabilityManager:
    """Structured logging plus in-process counters for the detection pipeline."""

    def __init__(self) -> None:
        self._startup_time = datetime.now(timezone.utc)
        self._command_counts: dict[str, int] = {}
        self._error_counts: dict[str, int] = {}
        self._label_counts: dict[str, int] = {}
        self._classifier_counts: dict[str, int] = {}
        self._transition_counts: dict[str, int] = {}
        self._persistence_failures = 0
        self._health_status: dict[str, bool] = {
            "database": False,
            "classifier_configured": False,
            "cogs_loaded": False,
        }

    def log_structured(
        self,
        level: LogLevel,
        action: ActionType,
        message: str,
        server_id: str | None = None,
        user_id: str | None = None,
        details: dict[str, Any] | None = None,
        duration_ms: float | None = None,
        success: bool | None = None,
        error_type: str | None = None,
    ) -> None:
        """Log a structured event."""
        entry = StructuredLogEntry(
            timestamp=datetime.now(timezone.utc),
            level=level,
            action=action,
            server_id=server_id,
            user_id=user_id,
            message=message,
            details=details or {},
            duration_ms=duration_ms,
            success=success,
            error_type=error_type,
        )

        log_method = {
            LogLevel.DEBUG: log.debug,
            LogLevel.INFO: log.info,
            LogLevel.WARNING: log.warning,
            LogLevel.ERROR: log.error,
            LogLevel.CRITICAL: log.critical,
        }.get(level, log.info)

        log_method(f"[{action.value}] {message} | {json.dumps(entry.to_dict(), separators=(',', ':'), default=str)}")

        if action == ActionType.COMMAND:
            command_name = entry.details.get("command", "unknown")
            self._command_counts[command_name] = self._command_counts.get(command_name, 0) + 1
        elif action == ActionType.ERROR:
            error_key = f"{error_type or 'unknown'}:{message}"
            self._error_counts[error_key] = self._error_counts.get(error_key, 0) + 1

    def log_command(
        self,
        command_name: str,
        server_id: str | None,
        user_id: str,
        success: bool = True,
        duration_ms: float | None = None,
        error: Exception | None = None,
    ) -> None:
        """Log a slash command execution."""
        self.log_structured(
            level=LogLevel.INFO if success else LogLevel.ERROR,
            action=ActionType.COMMAND,
            message=f"Command {command_name} {'executed' if success else 'failed'}",
            server_id=server_id,
            user_id=user_id,
            details={"command": command_name},
            duration_ms=duration_ms,
            success=success,
            error_type=type(error).__name__ if error else None,
        )

    def log_detection(
        self,
        server_id: str,
        user_id: str,
        label: str,
        confidence: float,
        classifier_status: str,
        detection_type: str,
        duration_ms: float | None = None,
    ) -> None:
        """Log the outcome of one suspicion assessment."""
        self._label_counts[label] = self._label_counts.get(label, 0) + 1
        self.log_structured(
            level=LogLevel.INFO if label == "OK" else LogLevel.WARNING,
            action=ActionType.DETECTION,
            message=f"Detection {detection_type} -> {label} ({confidence:.2f})",
            server_id=server_id,
            user_id=user_id,
            details={
                "label": label,
                "confidence": round(confidence, 4),
                "classifier": classifier_status,
                "detection_type": detection_type,
            },
            duration_ms=duration_ms,
            success=True,
        )

    def log_classifier_call(
        self,
        success: bool,
        duration_ms: float,
        server_id: str | None = None,
        user_id: str | None = None,
        error: Exception | None = None,
    ) -> None:
        """Log a profile classifier round trip."""
        key = "ok" if success else "failed"
        self._classifier_counts[key] = self._classifier_counts.get(key, 0) + 1
        self.log_structured(
            level=LogLevel.INFO if success else LogLevel.WARNING,
            action=ActionType.CLASSIFIER_CALL,
            message=f"Classifier call {'succeeded' if success else 'failed'}",
            server_id=server_id,
            user_id=user_id,
            details={"error": str(error)} if error else {},
            duration_ms=duration_ms,
            success=success,
            error_type=type(error).__name__ if error else None,
        )

    def log_transition(
        self,
        case_id: str,
        server_id: str,
        user_id: str,
        previous_status: str | None,
        new_status: str,
        moderator_id: str | None,
    ) -> None:
        """Log a verification case status change."""
        key = f"{previous_status or 'none'}->{new_status}"
        self._transition_counts[key] = self._transition_counts.get(key, 0) + 1
        self.log_structured(
            level=LogLevel.INFO,
            action=ActionType.TRANSITION,
            message=f"Case {case_id} {key}",
            server_id=server_id,
            user_id=user_id,
            details={"case_id": case_id, "moderator_id": moderator_id},
            success=True,
        )

    def log_enforcement(
        self,
        operation: str,
        success: bool,
        server_id: str,
        user_id: str,
        error: Exception | None = None,
    ) -> None:
        """Log a side-effect request sent to a platform gateway."""
        self.log_structured(
            level=LogLevel.INFO if success else LogLevel.WARNING,
            action=ActionType.ENFORCEMENT,
            message=f"Enforcement {operation} {'succeeded' if success else 'failed'}",
            server_id=server_id,
            user_id=user_id,
            details={"operation": operation},
            success=success,
            error_type=type(error).__name__ if error else None,
        )

    def log_persistence_failure(self, operation: str, error: Exception, context: dict[str, Any]) -> None:
        """Log a swallowed storage failure on the detection path."""
        self._persistence_failures += 1
        self.log_structured(
            level=LogLevel.ERROR,
            action=ActionType.PERSISTENCE,
            message=f"Persistence {operation} failed: {error}",
            server_id=context.get("server_id"),
            user_id=context.get("user_id"),
            details={"operation": operation, **context},
            success=False,
            error_type=type(error).__name__,
        )

    def log_startup_event(
        self,
        component: str,
        status: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Log a startup event."""
        self.log_structured(
            level={"OK": LogLevel.INFO, "DISABLED": LogLevel.WARNING}.get(status, LogLevel.ERROR),
            action=ActionType.STARTUP,
            message=f"Startup component {component}: {status}",
            details=details or {"component": component, "status": status},
            success=status == "OK",
        )
        self._health_status[component] = (status == "OK")

    def get_health_summary(self) -> dict[str, Any]:
        """Get health summary for monitoring."""
        uptime_ms = (datetime.now(timezone.utc) - self._startup_time).total_seconds() * 1000

        return {
            "uptime_ms": uptime_ms,
            "startup_time": self._startup_time.isoformat(),
            "health_status": dict(self._health_status),
            "all_healthy": all(self._health_status.values()),
            "command_counts": dict(self._command_counts),
            "error_counts": dict(self._error_counts),
            "label_counts": dict(self._label_counts),
            "classifier_counts": dict(self._classifier_counts),
            "transition_counts": dict(self._transition_counts),
            "persistence_failures": self._persistence_failures,
        }

    def reset_counters(self) -> None:
        """Reset all counters (useful for periodic cleanup)."""
        self._command_counts.clear()
        self._error_counts.clear()
        self._label_counts.clear()
        self._classifier_counts.clear()
        self._transition_counts.clear()
        self._persistence_failures = 0


# Global observability manager instance
observability = ObservabilityManager()


def log_error_with_context(error: Exception, context: dict[str, Any]) -> None:
    """Log an error with full context."""
    observability.log_structured(
        level=LogLevel.ERROR,
        action=ActionType.ERROR,
        message=str(error),
        server_id=context.get("server_id"),
        user_id=context.get("user_id"),
        details=context,
        error_type=type(error).__name__,
    )
