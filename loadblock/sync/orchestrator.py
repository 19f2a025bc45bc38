"""
Synchronization Orchestrator.

Moves a BoL from the mutable draft store onto the append-only ledger and
keeps the three stores consistent afterwards:

- ``activate``: freeze the quorate draft, reserve its record id and BoL
  number, commit version 1, then create the ImmutableRecord and mark the
  draft ``approved``. A failed commit unfreezes the draft only once the
  ledger confirms version 1 never landed.
- ``advance``: one forward status edge, one new version. The ledger is
  read first and is the only authority on the current status.
- ``reconcile``: rewrite the relational mirror from the ledger.

Store calls go through the version chain builder's retry policy; domain
errors are never retried.
"""
import asyncio
import logging
import uuid
from typing import List, Optional, Tuple
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from loadblock.approvals.schemas import ApprovalState
from loadblock.approvals.service import ApprovalCoordinator
from loadblock.audit.models import AuditEventType
from loadblock.audit.schemas import TransitionEvent
from loadblock.audit.sink import AuditSink
from loadblock.config import settings
from loadblock.documents.renderer import DocumentRenderer
from loadblock.documents.store import DocumentStore
from loadblock.drafts.models import (
    DraftHistoryEntry,
    DraftNote,
    DraftRecord,
    DraftSyncState,
    HistoryAction,
    NoteType,
)
from loadblock.drafts.service import DraftStore, draft_query
from loadblock.errors import (
    BoLError,
    InvalidStateError,
    InvalidTransitionError,
    LedgerConflictError,
    NotFoundError,
    PermissionDeniedError,
)
from loadblock.ledger.client import LedgerClient
from loadblock.ledger.schemas import ChainVerification, VersionEntry
from loadblock.lifecycle import machine
from loadblock.lifecycle.states import ApprovalParty, BoLStatus, PartyRole
from loadblock.shared.models import utcnow
from loadblock.sync.locks import KeyedLocks, draft_key, record_key
from loadblock.sync.models import ImmutableRecord
from loadblock.sync.numbering import BolNumberAllocator
from loadblock.sync.retry import RetryPolicy
from loadblock.sync.schemas import ApprovalOutcome, ImmutableRecordResponse, ReconcileResult
from loadblock.versioning.service import VersionChainBuilder
from loadblock.versioning.snapshot import build_snapshot

logger = logging.getLogger(__name__)

REJECTING_ROLES = {PartyRole.SHIPPER, PartyRole.CARRIER, PartyRole.ADMIN}


def _actor(actor_id) -> Optional[str]:
    return str(actor_id) if actor_id is not None else None


class SynchronizationOrchestrator:
    def __init__(
        self,
        db: AsyncSession,
        documents: DocumentStore,
        ledger: LedgerClient,
        locks: Optional[KeyedLocks] = None,
        renderer: Optional[DocumentRenderer] = None,
        audit_sink: Optional[AuditSink] = None,
        retry: Optional[RetryPolicy] = None,
        admin_ids: Optional[List[str]] = None,
    ):
        self.db = db
        self.locks = locks or KeyedLocks()
        self.approvals = ApprovalCoordinator(db, self.locks)
        self.drafts = DraftStore(db, self.locks, self.approvals)
        self.numbers = BolNumberAllocator(db)
        self.chain = VersionChainBuilder(documents, ledger, renderer=renderer, retry=retry)
        self.audit_sink = audit_sink
        self.admin_ids = admin_ids

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def _lock_draft(self, draft_id: UUID) -> DraftRecord:
        result = await self.db.execute(draft_query(draft_id).with_for_update())
        draft = result.scalar_one_or_none()
        if not draft or not draft.is_active:
            raise NotFoundError("Draft", draft_id)
        return draft

    async def _record_for_draft(self, draft_id: UUID) -> Optional[ImmutableRecord]:
        result = await self.db.execute(
            select(ImmutableRecord)
            .where(ImmutableRecord.draft_id == draft_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _find_record(self, record_id: UUID) -> Optional[ImmutableRecord]:
        result = await self.db.execute(
            select(ImmutableRecord)
            .where(ImmutableRecord.id == record_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _draft_reserving(self, record_id: UUID) -> Optional[DraftRecord]:
        """Draft that reserved ``record_id`` at freeze time."""
        result = await self.db.execute(
            select(DraftRecord.id).where(DraftRecord.immutable_record_id == record_id)
        )
        draft_id = result.scalar_one_or_none()
        if draft_id is None:
            return None
        result = await self.db.execute(draft_query(draft_id).with_for_update())
        return result.scalar_one()

    async def get_record(self, record_id: UUID) -> ImmutableRecord:
        record = await self._find_record(record_id)
        if not record:
            raise NotFoundError("BoL record", record_id)
        return record

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    async def _notify(self, event: AuditEventType, from_status=None, to_status=None, record_id=None,
                      draft_id=None, actor_id=None, detail=None) -> None:
        """Hand a committed change to the audit sink. Never raises."""
        if self.audit_sink is None:
            return
        payload = TransitionEvent(
            event=event,
            record_id=record_id,
            draft_id=draft_id,
            from_status=getattr(from_status, "value", from_status),
            to_status=getattr(to_status, "value", to_status),
            actor_id=_actor(actor_id),
            timestamp=utcnow(),
            detail=detail,
        )
        try:
            await asyncio.wait_for(self.audit_sink.emit(payload), timeout=settings.AUDIT_SINK_TIMEOUT_SECONDS)
        except Exception as e:
            logger.warning(f"Audit sink failed for {event.value} on {record_id or draft_id}: {e!r}")

    # ------------------------------------------------------------------
    # Approvals and rejection (pre-activation)
    # ------------------------------------------------------------------

    async def submit_approval(self, draft_id: UUID, party, approve: bool = True,
                              actor_id=None) -> ApprovalOutcome:
        """Record a party's approval and activate the draft once both are in."""
        if actor_id is not None:
            draft = await self.drafts.get(draft_id)
            try:
                role = PartyRole(ApprovalParty(party).value)
            except ValueError:
                role = None  # record_approval reports the bad party
            if role is not None:
                roles = machine.roles_for_actor(actor_id, draft.parties, self.admin_ids)
                if not roles & {role, PartyRole.ADMIN}:
                    raise PermissionDeniedError(actor_id, BoLStatus.APPROVED, {role, PartyRole.ADMIN})

        state = await self.approvals.record_approval(draft_id, party, approve=approve, actor_id=actor_id)
        if not state.quorum:
            return ApprovalOutcome(state=state)

        record = await self.activate(draft_id, actor_id=actor_id)
        draft = await self.drafts.get(draft_id)
        return ApprovalOutcome(
            state=ApprovalState.from_draft(draft),
            record=ImmutableRecordResponse.model_validate(record),
        )

    async def reject(self, draft_id: UUID, actor_id, category, reason: str) -> DraftHistoryEntry:
        """Send a pending draft back to its creator with a categorized reason.

        Status, approvals and version are left untouched.
        """
        category, formatted = machine.validate_rejection(category, reason)

        async with self.locks.hold(draft_key(draft_id)):
            draft = await self._lock_draft(draft_id)
            if draft.status != BoLStatus.PENDING or draft.sync_state != DraftSyncState.OPEN:
                raise InvalidStateError(
                    f"Only pending drafts can be rejected. Current: {draft.status.value}"
                )
            roles = machine.roles_for_actor(actor_id, draft.parties, self.admin_ids)
            if not roles & REJECTING_ROLES:
                raise PermissionDeniedError(actor_id, BoLStatus.PENDING, REJECTING_ROLES)

            entry = DraftHistoryEntry(
                draft_id=draft.id,
                action=HistoryAction.REJECTED,
                field_changed="status",
                old_value=BoLStatus.PENDING.value,
                new_value=BoLStatus.PENDING.value,
                detail={"category": category.value, "reason": formatted},
                changed_by=actor_id,
            )
            self.db.add(entry)
            self.db.add(DraftNote(draft_id=draft.id, content=formatted, note_type=NoteType.ISSUE,
                                  created_by=actor_id))
            await self.db.commit()
            originator = draft.created_by

        logger.info(f"Draft {draft_id} rejected by {actor_id}: {formatted}")
        await self._notify(
            AuditEventType.BOL_REJECTED,
            from_status=BoLStatus.PENDING,
            to_status=BoLStatus.PENDING,
            draft_id=draft_id,
            actor_id=actor_id,
            detail={"category": category.value, "reason": formatted, "notify": _actor(originator)},
        )
        return entry

    # ------------------------------------------------------------------
    # Activation
    # ------------------------------------------------------------------

    async def _freeze(self, draft_id: UUID) -> Tuple[DraftRecord, bool]:
        """Freeze a quorate draft and reserve its record id and BoL number.

        Returns ``(draft, already_activated)``. Reservations survive a
        failed attempt so a retry reuses the same ledger key.
        """
        draft = await self._lock_draft(draft_id)
        if draft.sync_state == DraftSyncState.ACTIVATED:
            return draft, True
        machine.validate_activation(draft.status, draft.shipper_approved, draft.carrier_approved)

        draft.sync_state = DraftSyncState.ACTIVATING
        if draft.immutable_record_id is None:
            draft.immutable_record_id = uuid.uuid4()
        await self.db.commit()

        if draft.bol_number is None:
            bol_number = await self.numbers.allocate()
            draft = await self._lock_draft(draft_id)
            draft.bol_number = bol_number
            await self.db.commit()
        return draft, False

    async def _unfreeze(self, draft: DraftRecord, error: Exception) -> None:
        draft.sync_state = DraftSyncState.OPEN
        await self.db.commit()
        logger.warning(
            f"Activation of draft {draft.id} ({draft.bol_number}) failed, draft unfrozen "
            f"with approvals kept: {error}"
        )

    async def _settle_failed_genesis(self, draft: DraftRecord, error: BoLError) -> VersionEntry:
        """Decide the fate of a genesis commit that reported failure.

        A failed or timed-out submit may still have landed, so the ledger is
        asked before the draft is released. Returns the landed version 1;
        otherwise re-raises ``error``, unfreezing the draft only when the
        ledger confirms version 1 is absent.
        """
        record_id = draft.immutable_record_id
        try:
            genesis = await self.chain.entry(record_id, 1)
        except BoLError as lookup_error:
            logger.error(
                f"Activation of draft {draft.id} failed ({error}) and the ledger could not be "
                f"read ({lookup_error}); draft stays frozen until a retry or reconcile"
            )
            raise error
        if genesis is None:
            await self._unfreeze(draft, error)
            raise error
        logger.warning(f"Version 1 of {record_id} landed despite '{error}'; adopting it")
        return genesis

    async def activate(self, draft_id: UUID, actor_id=None) -> ImmutableRecord:
        """Convert a quorate draft into a ledger-anchored record, at most once.

        Concurrent callers are serialized on the draft; losers get the
        winner's record.
        """
        async with self.locks.hold(draft_key(draft_id)):
            draft, already_activated = await self._freeze(draft_id)
            if already_activated:
                record = await self._record_for_draft(draft_id)
                if record is None:
                    raise InvalidStateError(f"Draft {draft_id} is activated but has no record; reconcile it")
                return record

            record_id = draft.immutable_record_id
            try:
                genesis = await self.chain.entry(record_id, 1)
                if genesis is not None:
                    logger.warning(f"Adopting committed version 1 of {record_id} from an earlier attempt")
                else:
                    snapshot = build_snapshot(draft, draft.bol_number)
                    genesis = await self.chain.commit_version(
                        record_id, BoLStatus.APPROVED, actor_id, "Activated on dual approval",
                        snapshot, sequence=1,
                    )
            except BoLError as e:
                genesis = await self._settle_failed_genesis(draft, e)

            record = ImmutableRecord(
                id=record_id,
                draft_id=draft.id,
                bol_number=genesis.bol_number,
                genesis_tx_id=genesis.tx_id,
                current_status=genesis.status,
                current_sequence=genesis.sequence,
                current_hash=genesis.content_hash,
            )
            self.db.add(record)
            self._mirror_draft(draft, genesis)
            draft.sync_state = DraftSyncState.ACTIVATED
            self.db.add(DraftHistoryEntry(
                draft_id=draft.id,
                action=HistoryAction.ACTIVATED,
                field_changed="status",
                old_value=BoLStatus.PENDING.value,
                new_value=genesis.status.value,
                detail={"record_id": str(record_id), "bol_number": genesis.bol_number, "tx_id": genesis.tx_id},
                changed_by=actor_id,
            ))
            try:
                await self.db.commit()
            except IntegrityError:
                await self.db.rollback()
                record = await self._record_for_draft(draft_id)
                if record is None:
                    raise
                return record

        logger.info(f"Draft {draft_id} activated as {record.bol_number} (record {record_id})")
        await self._notify(
            AuditEventType.BOL_ACTIVATED,
            from_status=BoLStatus.PENDING,
            to_status=genesis.status,
            record_id=record_id,
            draft_id=draft_id,
            actor_id=actor_id,
            detail={"bol_number": record.bol_number, "tx_id": genesis.tx_id},
        )
        return record

    # ------------------------------------------------------------------
    # Lifecycle (post-activation)
    # ------------------------------------------------------------------

    def _mirror_draft(self, draft: DraftRecord, entry: VersionEntry) -> None:
        draft.status = entry.status
        draft.bol_number = entry.bol_number
        draft.blockchain_tx_id = entry.tx_id
        draft.document_hash = entry.document_hash or entry.content_hash
        draft.version += 1

    def _mirror_record(self, record: ImmutableRecord, entry: VersionEntry) -> None:
        record.current_status = entry.status
        record.current_sequence = entry.sequence
        record.current_hash = entry.content_hash

    async def _pending_draft_guard(self, record_id: UUID, target: BoLStatus) -> None:
        """Reject ``advance`` on an id that is still only a pending draft."""
        result = await self.db.execute(
            select(DraftRecord).where(
                (DraftRecord.id == record_id) | (DraftRecord.immutable_record_id == record_id)
            )
        )
        draft = result.scalars().first()
        if draft is not None and draft.status == BoLStatus.PENDING:
            machine.validate_transition(BoLStatus.PENDING, target)

    async def advance(self, record_id: UUID, target_status, actor_id, notes: str = "") -> VersionEntry:
        """Move an activated BoL one step forward and commit the new version.

        Replaying the call that produced the latest version returns that
        version instead of committing another.
        """
        target = machine.parse_status(target_status)
        notes = notes or ""

        async with self.locks.hold(record_key(record_id)):
            record = await self._find_record(record_id)
            if record is None:
                await self._pending_draft_guard(record_id, target)
                raise NotFoundError("BoL record", record_id)

            latest = await self.chain.latest(record_id)
            if latest is None:
                raise NotFoundError("Ledger record", record_id)
            draft = await self._lock_draft(record.draft_id)

            if (latest.sequence > 1 and latest.status == target
                    and latest.actor_id == _actor(actor_id) and latest.notes == notes):
                if record.current_sequence != latest.sequence:
                    self._mirror_record(record, latest)
                    self._mirror_draft(draft, latest)
                    await self.db.commit()
                logger.info(f"Replayed advance of {record.bol_number} to {target.value}; returning v{latest.sequence}")
                return latest

            machine.validate_transition(latest.status, target)
            roles = machine.roles_for_actor(actor_id, draft.parties, self.admin_ids)
            machine.authorize(actor_id, target, roles)

            previous = await self.chain.load_snapshot(latest)
            snapshot = machine.apply_transition_effects(previous, target, utcnow().date())
            try:
                entry = await self.chain.commit_version(
                    record_id, target, actor_id, notes, snapshot, sequence=latest.sequence + 1
                )
            except LedgerConflictError:
                # Another writer committed a different transition for this sequence
                current = await self.chain.latest(record_id)
                raise InvalidTransitionError(
                    current.status, target, machine.allowed_transitions(current.status)
                )

            from_status = latest.status
            self._mirror_record(record, entry)
            self._mirror_draft(draft, entry)
            if snapshot.delivery_date != draft.delivery_date:
                draft.delivery_date = snapshot.delivery_date
            self.db.add(DraftHistoryEntry(
                draft_id=draft.id,
                action=HistoryAction.STATUS_CHANGED,
                field_changed="status",
                old_value=from_status.value,
                new_value=entry.status.value,
                detail={"sequence": entry.sequence, "tx_id": entry.tx_id, "notes": notes},
                changed_by=actor_id,
            ))
            await self.db.commit()

        logger.info(
            f"{record.bol_number} advanced {from_status.value} -> {entry.status.value} "
            f"(v{entry.sequence}) by {actor_id}"
        )
        await self._notify(
            AuditEventType.BOL_STATUS_CHANGED,
            from_status=from_status,
            to_status=entry.status,
            record_id=record_id,
            draft_id=draft.id,
            actor_id=actor_id,
            detail={"sequence": entry.sequence, "notes": notes},
        )
        return entry

    async def next_actions(self, record_id: UUID, actor_id) -> List[BoLStatus]:
        """Statuses ``actor_id`` may move the record to next."""
        record = await self.get_record(record_id)
        draft = await self.drafts.get(record.draft_id, include_deleted=True)
        roles = machine.roles_for_actor(actor_id, draft.parties, self.admin_ids)
        return machine.valid_next_statuses(record.current_status, roles)

    async def history(self, record_id: UUID) -> List[VersionEntry]:
        return await self.chain.history(record_id)

    async def verify(self, record_id: UUID) -> ChainVerification:
        return await self.chain.verify(record_id)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def reconcile(self, record_id: UUID) -> ReconcileResult:
        """Make the relational mirror match the ledger. The ledger always wins."""
        async with self.locks.hold(record_key(record_id)):
            latest = await self.chain.latest(record_id)
            record = await self._find_record(record_id)
            draft_id = record.draft_id if record else None
            if draft_id is None:
                reserving = await self._draft_reserving(record_id)
                draft_id = reserving.id if reserving else None
            if draft_id is None:
                raise NotFoundError("BoL record", record_id)

            async with self.locks.hold(draft_key(draft_id)):
                draft = await self._lock_draft(draft_id)
                result = ReconcileResult(record_id=record_id, mirror_status=draft.status)

                if latest is None:
                    if draft.sync_state == DraftSyncState.ACTIVATING:
                        await self._unfreeze(draft, NotFoundError("Ledger record", record_id))
                        result.unfrozen = True
                        return result
                    raise NotFoundError("Ledger record", record_id)

                result.ledger_status = latest.status
                result.ledger_sequence = latest.sequence

                if record is None:
                    genesis = await self.chain.entry(record_id, 1)
                    record = ImmutableRecord(
                        id=record_id,
                        draft_id=draft.id,
                        bol_number=genesis.bol_number,
                        genesis_tx_id=genesis.tx_id,
                        current_status=genesis.status,
                        current_sequence=genesis.sequence,
                        current_hash=genesis.content_hash,
                    )
                    self.db.add(record)
                    result.materialized = True

                in_sync = (
                    not result.materialized
                    and record.current_sequence == latest.sequence
                    and draft.status == latest.status
                    and draft.sync_state == DraftSyncState.ACTIVATED
                )
                if in_sync:
                    return result

                # Version 1 on the ledger proves quorum was reached
                now = utcnow()
                if not draft.shipper_approved:
                    draft.shipper_approved, draft.shipper_approved_at = True, now
                if not draft.carrier_approved:
                    draft.carrier_approved, draft.carrier_approved_at = True, now
                self._mirror_record(record, latest)
                self._mirror_draft(draft, latest)
                draft.sync_state = DraftSyncState.ACTIVATED
                self.db.add(DraftHistoryEntry(
                    draft_id=draft.id,
                    action=HistoryAction.RECONCILED,
                    field_changed="status",
                    old_value=result.mirror_status.value,
                    new_value=latest.status.value,
                    detail={"sequence": latest.sequence, "materialized": result.materialized},
                ))
                await self.db.commit()
                result.changed = True

        logger.warning(
            f"Reconciled {record_id}: mirror {result.mirror_status.value} -> ledger "
            f"{latest.status.value} (v{latest.sequence})"
        )
        await self._notify(
            AuditEventType.BOL_RECONCILED,
            from_status=result.mirror_status,
            to_status=latest.status,
            record_id=record_id,
            draft_id=draft_id,
            detail={"sequence": latest.sequence, "materialized": result.materialized},
        )
        return result
