from __future__ import annotations


class DomainError(Exception):
    """Base for every error the engine surfaces to its caller."""


class ValidationError(DomainError):
    """Malformed or inconsistent input. Never retried."""


class NotFoundError(DomainError):
    """Entity is missing or belongs to another user (same signal for both)."""


class InvalidStateTransition(DomainError):
    """Operation not allowed from the task's current status."""


class PersistenceError(DomainError):
    """Underlying document store failed."""
