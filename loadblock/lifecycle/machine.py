"""Fixed BoL status lifecycle.

The graph is a strict linear chain ``pending -> approved -> ... -> paid``.
``pending -> approved`` is never requested directly; it happens through
activation once both approvals are in. Every other edge is a single forward
step triggered by an actor whose roles on the BoL entitle them to it.
"""
from datetime import date
from typing import Iterable, List, Optional, Set

from loadblock.config import settings
from loadblock.errors import InvalidStateError, InvalidTransitionError, PermissionDeniedError, ValidationError
from loadblock.lifecycle.states import (
    BoLStatus,
    PartyRole,
    RejectionCategory,
    REJECTION_LABELS,
)

STATUS_ORDER: List[BoLStatus] = [
    BoLStatus.PENDING,
    BoLStatus.APPROVED,
    BoLStatus.ASSIGNED,
    BoLStatus.ACCEPTED,
    BoLStatus.PICKED_UP,
    BoLStatus.EN_ROUTE,
    BoLStatus.DELIVERED,
    BoLStatus.UNPAID,
    BoLStatus.PAID,
]

# Deterministic State Machine Logic
VALID_TRANSITIONS = {
    current: [STATUS_ORDER[i + 1]] if i + 1 < len(STATUS_ORDER) else []
    for i, current in enumerate(STATUS_ORDER)
}

TERMINAL_STATUSES = frozenset(s for s, nxt in VALID_TRANSITIONS.items() if not nxt)

# Roles entitled to move a BoL *into* a status.
EDGE_ROLES = {
    BoLStatus.ASSIGNED: {PartyRole.BROKER, PartyRole.CARRIER, PartyRole.ADMIN},
    BoLStatus.ACCEPTED: {PartyRole.CARRIER, PartyRole.ADMIN},
    BoLStatus.PICKED_UP: {PartyRole.CARRIER, PartyRole.ADMIN},
    BoLStatus.EN_ROUTE: {PartyRole.CARRIER, PartyRole.ADMIN},
    BoLStatus.DELIVERED: {PartyRole.CARRIER, PartyRole.CONSIGNEE, PartyRole.ADMIN},
    BoLStatus.UNPAID: {PartyRole.CARRIER, PartyRole.BROKER, PartyRole.ADMIN},
    # Settlement is open to every party on the BoL
    BoLStatus.PAID: set(PartyRole),
}


def parse_status(value) -> BoLStatus:
    if isinstance(value, BoLStatus):
        return value
    try:
        return BoLStatus(value)
    except ValueError:
        raise ValidationError("status", f"Unknown status: {value}")


def allowed_transitions(current: BoLStatus) -> List[BoLStatus]:
    return list(VALID_TRANSITIONS.get(current, []))


def next_status(current: BoLStatus) -> Optional[BoLStatus]:
    nxt = VALID_TRANSITIONS.get(current, [])
    return nxt[0] if nxt else None


def is_terminal(status: BoLStatus) -> bool:
    return status in TERMINAL_STATUSES


def workflow_step(status: BoLStatus) -> int:
    """1-based position of ``status`` in the lifecycle."""
    return STATUS_ORDER.index(status) + 1


def validate_transition(current, target) -> BoLStatus:
    """Check that ``target`` is the unique next edge from ``current``.

    Activation (``pending -> approved``) is quorum-gated and is rejected here;
    callers must go through the orchestrator's ``activate``.
    """
    current = parse_status(current)
    try:
        target = BoLStatus(target)
    except ValueError:
        raise InvalidTransitionError(current, target, allowed_transitions(current))

    allowed = allowed_transitions(current)
    if current == BoLStatus.PENDING:
        raise InvalidTransitionError(current, target, [])
    if target not in allowed:
        raise InvalidTransitionError(current, target, allowed)
    return target


def roles_for_actor(actor_id, parties: dict, admin_ids: Optional[Iterable[str]] = None) -> Set[PartyRole]:
    """Roles ``actor_id`` holds on a BoL, from the party slots it occupies."""
    if actor_id is None:
        return set()
    actor = str(actor_id)
    roles = {
        PartyRole(slot)
        for slot, party_id in parties.items()
        if party_id is not None and str(party_id) == actor
    }
    admins = settings.ADMIN_ACTOR_IDS if admin_ids is None else admin_ids
    if actor in {str(a) for a in admins}:
        roles.add(PartyRole.ADMIN)
    return roles


def authorize(actor_id, target: BoLStatus, roles: Set[PartyRole]) -> None:
    required = EDGE_ROLES.get(target, {PartyRole.ADMIN})
    if not roles & required:
        raise PermissionDeniedError(actor_id, target, required)


def valid_next_statuses(current: BoLStatus, roles: Set[PartyRole]) -> List[BoLStatus]:
    """Next statuses the holder of ``roles`` may trigger from ``current``."""
    if current == BoLStatus.PENDING:
        return []
    return [s for s in allowed_transitions(current) if roles & EDGE_ROLES.get(s, set())]


def workflow_summary() -> List[dict]:
    return [
        {
            "status": status.value,
            "step": workflow_step(status),
            "next": [s.value for s in allowed_transitions(status)],
            "required_roles": sorted(r.value for r in EDGE_ROLES.get(status, set())),
            "terminal": is_terminal(status),
            "quorum_gated": status == BoLStatus.APPROVED,
        }
        for status in STATUS_ORDER
    ]


def validate_activation(status: BoLStatus, shipper_approved: bool, carrier_approved: bool) -> None:
    """Preconditions for ``pending -> approved``; names what is missing."""
    if status != BoLStatus.PENDING:
        raise InvalidStateError(f"Draft must be pending to activate. Current: {status.value}")
    missing = []
    if not shipper_approved:
        missing.append("shipper approval missing")
    if not carrier_approved:
        missing.append("carrier approval missing")
    if missing:
        raise InvalidStateError("; ".join(missing))


def validate_rejection(category, reason: str) -> tuple:
    """Validate a rejection notice; returns ``(category, formatted_reason)``."""
    if not category:
        raise ValidationError("category", "Please select a rejection category")
    try:
        category = RejectionCategory(category)
    except ValueError:
        raise ValidationError("category", f"Unknown rejection category: {category}")

    text = (reason or "").strip()
    if not text:
        raise ValidationError("reason", "Please provide a detailed reason for rejection")
    if len(text) < settings.REJECTION_REASON_MIN_LENGTH:
        raise ValidationError(
            "reason", f"Reason must be at least {settings.REJECTION_REASON_MIN_LENGTH} characters long"
        )
    if len(text) > settings.REJECTION_REASON_MAX_LENGTH:
        raise ValidationError(
            "reason", f"Reason must be less than {settings.REJECTION_REASON_MAX_LENGTH} characters"
        )
    return category, f"[{REJECTION_LABELS[category]}] {text}"


def apply_transition_effects(snapshot, target: BoLStatus, on: date):
    """Document changes implied by entering ``target``.

    Entering ``delivered`` stamps the delivery date when none was agreed.
    Returns a new snapshot; the input is not modified.
    """
    if target == BoLStatus.DELIVERED and snapshot.delivery_date is None:
        return snapshot.model_copy(update={"delivery_date": on})
    return snapshot
