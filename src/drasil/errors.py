"""Error taxonomy shared by the detection and moderation layers.

ValidationError and NotFoundError always reach the caller. PersistenceError is
swallowed only on the detection write path. ExternalServiceError never leaves the
orchestrator.
"""

from __future__ import annotations

from typing import Optional


class DrasilError(Exception):
    """Base class for all drasil errors."""


class ValidationError(DrasilError):
    """Required fields are missing or malformed."""

    def __init__(self, message: str, *, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field


class NotFoundError(DrasilError):
    """A referenced entity is missing or not in the expected state."""

    def __init__(self, entity: str, entity_id: Optional[str], message: Optional[str] = None) -> None:
        super().__init__(message or f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class CaseConflictError(DrasilError):
    """A PENDING verification case already exists for the (server, user) pair."""

    def __init__(self, server_id: str, user_id: str) -> None:
        super().__init__(f"User {user_id} already has a pending verification case in server {server_id}")
        self.server_id = server_id
        self.user_id = user_id


class PersistenceError(DrasilError):
    """Storage I/O failed."""


class ExternalServiceError(DrasilError):
    """A remote collaborator (the profile classifier) failed or timed out."""
