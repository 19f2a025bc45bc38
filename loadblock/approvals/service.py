import logging
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from loadblock.approvals.schemas import ApprovalState
from loadblock.drafts.models import DraftHistoryEntry, DraftRecord, DraftSyncState, HistoryAction
from loadblock.errors import InvalidStateError, NotFoundError, ValidationError
from loadblock.lifecycle.states import ApprovalParty, BoLStatus
from loadblock.shared.models import utcnow
from loadblock.sync.locks import KeyedLocks, draft_key

logger = logging.getLogger(__name__)


class ApprovalCoordinator:
    """Tracks shipper/carrier approval flags on a pending draft.

    Approvals are monotonic: re-approving keeps the original timestamp, and
    a flag only goes back to false through an explicit withdrawal or through
    ``invalidate_approvals`` when the document content changes.
    """

    def __init__(self, db: AsyncSession, locks: KeyedLocks):
        self.db = db
        self.locks = locks

    async def _load(self, draft_id: UUID) -> DraftRecord:
        result = await self.db.execute(
            select(DraftRecord)
            .where(DraftRecord.id == draft_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        draft = result.scalar_one_or_none()
        if not draft or not draft.is_active:
            raise NotFoundError("Draft", draft_id)
        return draft

    async def get_approval_state(self, draft_id: UUID) -> ApprovalState:
        draft = await self.db.get(DraftRecord, draft_id)
        if not draft:
            raise NotFoundError("Draft", draft_id)
        return ApprovalState.from_draft(draft)

    async def record_approval(
        self,
        draft_id: UUID,
        party,
        approve: bool = True,
        actor_id: Optional[UUID] = None,
    ) -> ApprovalState:
        try:
            party = ApprovalParty(party)
        except ValueError:
            raise ValidationError("party", f"Approval party must be shipper or carrier, got {party}")

        async with self.locks.hold(draft_key(draft_id)):
            draft = await self._load(draft_id)
            if draft.status != BoLStatus.PENDING:
                raise InvalidStateError(
                    f"Approvals can only be recorded on pending drafts. Current: {draft.status.value}"
                )
            if draft.sync_state != DraftSyncState.OPEN:
                raise InvalidStateError("Draft is frozen while it is being activated")

            flag = f"{party.value}_approved"
            if bool(getattr(draft, flag)) == approve:
                return ApprovalState.from_draft(draft)

            self.db.add(DraftHistoryEntry(
                draft_id=draft.id,
                action=HistoryAction.APPROVED if approve else HistoryAction.APPROVAL_WITHDRAWN,
                field_changed=flag,
                old_value=str(not approve),
                new_value=str(approve),
                changed_by=actor_id,
            ))
            if approve:
                setattr(draft, flag, True)
                setattr(draft, f"{flag}_at", utcnow())
            else:
                # A withdrawal amends the agreement, so neither approval survives it
                self.clear_approvals(draft, actor_id, reason=f"{party.value} withdrew approval")
            draft.version += 1
            await self.db.commit()

        state = ApprovalState.from_draft(draft)
        logger.info(
            f"Draft {draft_id}: {party.value} approval set to {approve} (quorum={state.quorum})"
        )
        return state

    async def invalidate_approvals(self, draft_id: UUID, actor_id: Optional[UUID] = None) -> bool:
        """Clear both approval flags; returns True if any flag was set."""
        async with self.locks.hold(draft_key(draft_id)):
            draft = await self._load(draft_id)
            cleared = self.clear_approvals(draft, actor_id, reason="explicit invalidation")
            if cleared:
                draft.version += 1
                await self.db.commit()
        return cleared

    def clear_approvals(self, draft: DraftRecord, actor_id: Optional[UUID], reason: str) -> bool:
        """Reset approvals on an already-locked draft, inside the caller's transaction.

        Called by the draft store on every content mutation so approvals always
        refer to the current document.
        """
        if not (draft.shipper_approved or draft.carrier_approved):
            return False
        if draft.status != BoLStatus.PENDING or draft.sync_state != DraftSyncState.OPEN:
            raise InvalidStateError("Approvals of an activated BoL cannot be reset")

        previous = {"shipper": draft.shipper_approved, "carrier": draft.carrier_approved}
        draft.shipper_approved = False
        draft.shipper_approved_at = None
        draft.carrier_approved = False
        draft.carrier_approved_at = None
        self.db.add(DraftHistoryEntry(
            draft_id=draft.id,
            action=HistoryAction.APPROVALS_INVALIDATED,
            detail={"reason": reason, "previous": previous},
            changed_by=actor_id,
        ))
        logger.info(f"Draft {draft.id}: approvals cleared ({reason})")
        return True
