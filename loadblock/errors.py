"""Domain error taxonomy.

Store-facing failures (``StorageFailure``) are the only errors the
orchestrator retries. Everything else is surfaced to the caller as-is,
since repeating the same input cannot succeed.
"""
from typing import Iterable, Optional


class BoLError(Exception):
    """Base class for every error raised by the lifecycle engine."""
    retriable: bool = False


class ConflictError(BoLError):
    """Stale version on write. Re-read the draft and retry."""
    retriable = True

    def __init__(self, message: str, current_version: Optional[int] = None):
        super().__init__(message)
        self.current_version = current_version


class LedgerConflictError(ConflictError):
    """A (record, sequence) key was already committed with a different payload."""

    def __init__(self, record_id, sequence: int, message: Optional[str] = None):
        super().__init__(message or f"Ledger already holds a different entry for {record_id}#{sequence}")
        self.record_id = record_id
        self.sequence = sequence


class InvalidStateError(BoLError):
    """Operation is not valid for the record's current status."""


class InvalidTransitionError(BoLError):
    """Requested status edge is not adjacent to the current status."""

    def __init__(self, current, target, allowed: Iterable = ()):
        self.current = current
        self.target = target
        self.allowed = [getattr(a, "value", a) for a in allowed]
        current_v = getattr(current, "value", current)
        target_v = getattr(target, "value", target)
        allowed_text = ", ".join(self.allowed) if self.allowed else "none (terminal)"
        super().__init__(
            f"Invalid transition from {current_v} to {target_v}. Allowed: {allowed_text}"
        )


class ValidationError(BoLError):
    """Input violates a business rule (e.g. rejection reason too short)."""

    def __init__(self, field: str, message: str):
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


class PermissionDeniedError(BoLError):
    """Actor holds none of the roles entitled to trigger an edge."""

    def __init__(self, actor_id, target, required_roles: Iterable = ()):
        self.actor_id = actor_id
        self.target = target
        self.required_roles = sorted(getattr(r, "value", r) for r in required_roles)
        target_v = getattr(target, "value", target)
        super().__init__(
            f"Actor {actor_id} may not move a BoL to {target_v}. "
            f"Required roles: {', '.join(self.required_roles) or 'none'}"
        )


class StorageFailure(BoLError):
    """Ledger or document store unreachable, failing or timed out."""
    retriable = True

    def __init__(self, store: str, operation: str, detail: str = "", retriable: bool = True):
        message = f"{store} {operation} failed"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.store = store
        self.operation = operation
        self.retriable = retriable


class NotFoundError(BoLError):
    """Unknown id or content hash."""

    def __init__(self, kind: str, key):
        super().__init__(f"{kind} {key} not found")
        self.kind = kind
        self.key = key
