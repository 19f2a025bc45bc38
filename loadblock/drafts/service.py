import logging
from decimal import Decimal
from typing import List, Optional, Union
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from loadblock.approvals.service import ApprovalCoordinator
from loadblock.drafts.models import (
    CargoLine,
    DraftHistoryEntry,
    DraftNote,
    DraftRecord,
    DraftSyncState,
    FreightCharge,
    HistoryAction,
)
from loadblock.drafts.schemas import (
    CargoLineCreate,
    CargoLineUpdate,
    DraftCreate,
    DraftPatch,
    FreightChargeIn,
    NoteCreate,
)
from loadblock.errors import ConflictError, InvalidStateError, NotFoundError, ValidationError
from loadblock.lifecycle.states import BoLStatus
from loadblock.sync.locks import KeyedLocks, draft_key

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")

# Cargo line columns an edit may change but never clear
REQUIRED_LINE_FIELDS = ("description", "quantity", "unit", "weight", "value", "dimension_unit", "is_hazmat")


def compute_totals(cargo_lines) -> dict:
    """Draft totals derived from its cargo lines."""
    weight = sum((Decimal(line.weight) for line in cargo_lines), Decimal("0"))
    value = sum((Decimal(line.value) for line in cargo_lines), Decimal("0"))
    pieces = sum(int(line.quantity) for line in cargo_lines)
    return {
        "total_weight": weight.quantize(CENTS),
        "total_value": value.quantize(CENTS),
        "total_pieces": pieces,
    }


def compute_total_charges(base_rate, fuel_surcharge, accessorial_charges) -> Decimal:
    return (Decimal(base_rate) + Decimal(fuel_surcharge) + Decimal(accessorial_charges)).quantize(CENTS)


def draft_query(draft_id: UUID):
    """Fresh load of a draft with its cargo lines and charges."""
    return (
        select(DraftRecord)
        .where(DraftRecord.id == draft_id)
        .options(selectinload(DraftRecord.cargo_lines), selectinload(DraftRecord.freight_charge))
        .execution_options(populate_existing=True)
    )


class DraftStore:
    """Typed access to the mutable collaboration record.

    Every content mutation is serialized per draft, checked against the
    caller's version (optimistic concurrency), bumps the version, recomputes
    derived totals and clears approvals so they always refer to the current
    content.
    """

    def __init__(self, db: AsyncSession, locks: KeyedLocks, approvals: Optional[ApprovalCoordinator] = None):
        self.db = db
        self.locks = locks
        self.approvals = approvals or ApprovalCoordinator(db, locks)

    async def get(self, draft_id: UUID, include_deleted: bool = False) -> DraftRecord:
        result = await self.db.execute(draft_query(draft_id))
        draft = result.scalar_one_or_none()
        if not draft or (not draft.is_active and not include_deleted):
            raise NotFoundError("Draft", draft_id)
        return draft

    async def _load_for_update(self, draft_id: UUID, version: Optional[int]) -> DraftRecord:
        result = await self.db.execute(draft_query(draft_id).with_for_update())
        draft = result.scalar_one_or_none()
        if not draft or not draft.is_active:
            raise NotFoundError("Draft", draft_id)
        if draft.status != BoLStatus.PENDING or draft.sync_state != DraftSyncState.OPEN:
            raise InvalidStateError(
                f"Draft {draft_id} is no longer editable (status={draft.status.value}, "
                f"sync_state={draft.sync_state.value})"
            )
        if version is not None and draft.version != version:
            raise ConflictError(
                f"Draft {draft_id} was modified by another party (expected version {version}, "
                f"current {draft.version}). Re-read and retry.",
                current_version=draft.version,
            )
        return draft

    def _log(self, draft: DraftRecord, action: HistoryAction, changed_by, **fields) -> None:
        self.db.add(DraftHistoryEntry(draft_id=draft.id, action=action, changed_by=changed_by, **fields))

    def _content_changed(self, draft: DraftRecord, changed_by, reason: str) -> None:
        draft.version += 1
        self.approvals.clear_approvals(draft, changed_by, reason=reason)

    def _apply_totals(self, draft: DraftRecord) -> None:
        for key, value in compute_totals(draft.cargo_lines).items():
            setattr(draft, key, value)

    async def create_draft(self, draft_in: DraftCreate, created_by: Optional[UUID] = None) -> DraftRecord:
        draft = DraftRecord(
            status=BoLStatus.PENDING,
            sync_state=DraftSyncState.OPEN,
            created_by=created_by,
            shipper_id=draft_in.shipper_id,
            consignee_id=draft_in.consignee_id,
            carrier_id=draft_in.carrier_id,
            broker_id=draft_in.broker_id,
            pickup_date=draft_in.pickup_date,
            delivery_date=draft_in.delivery_date,
            special_instructions=draft_in.special_instructions,
            hazmat_info=draft_in.hazmat_info,
            shipper_approved=False,
            carrier_approved=False,
            version=1,
            is_active=True,
            cargo_lines=[],
        )
        for order, line_in in enumerate(draft_in.cargo_lines, start=1):
            draft.cargo_lines.append(CargoLine(line_order=order, **line_in.model_dump()))
        if draft_in.freight_charges:
            draft.freight_charge = self._build_charge(draft_in.freight_charges)
        self._apply_totals(draft)

        self.db.add(draft)
        await self.db.flush()  # Get the ID before logging
        self._log(draft, HistoryAction.CREATED, created_by)
        await self.db.commit()

        logger.info(f"Draft {draft.id} created with {len(draft.cargo_lines)} cargo lines")
        return await self.get(draft.id)

    async def update(
        self,
        draft_id: UUID,
        version: int,
        patch: Union[DraftPatch, dict],
        changed_by: Optional[UUID] = None,
    ) -> DraftRecord:
        if isinstance(patch, dict):
            patch = DraftPatch(**patch)
        changes = patch.model_dump(exclude_unset=True)

        async with self.locks.hold(draft_key(draft_id)):
            draft = await self._load_for_update(draft_id, version)
            changed_fields = []
            for field, new_value in changes.items():
                old_value = getattr(draft, field)
                if old_value == new_value:
                    continue
                setattr(draft, field, new_value)
                changed_fields.append(field)
                self._log(draft, HistoryAction.UPDATED, changed_by, field_changed=field,
                          old_value=None if old_value is None else str(old_value),
                          new_value=None if new_value is None else str(new_value))
            if not changed_fields:
                return draft

            self._content_changed(draft, changed_by, reason=f"fields edited: {', '.join(changed_fields)}")
            await self.db.commit()
        return draft

    async def list_cargo_lines(self, draft_id: UUID) -> List[CargoLine]:
        result = await self.db.execute(
            select(CargoLine).where(CargoLine.draft_id == draft_id).order_by(CargoLine.line_order)
        )
        return list(result.scalars().all())

    async def add_cargo_line(
        self,
        draft_id: UUID,
        version: int,
        line_in: CargoLineCreate,
        changed_by: Optional[UUID] = None,
    ) -> CargoLine:
        async with self.locks.hold(draft_key(draft_id)):
            draft = await self._load_for_update(draft_id, version)
            next_order = max((line.line_order for line in draft.cargo_lines), default=0) + 1
            line = CargoLine(line_order=next_order, **line_in.model_dump())
            draft.cargo_lines.append(line)
            self._apply_totals(draft)
            await self.db.flush()
            self._log(draft, HistoryAction.CARGO_ADDED, changed_by, field_changed="cargo_lines",
                      new_value=str(line.id), detail={"description": line.description})
            self._content_changed(draft, changed_by, reason="cargo line added")
            await self.db.commit()
        return line

    def _find_line(self, draft: DraftRecord, line_id: UUID) -> CargoLine:
        for line in draft.cargo_lines:
            if line.id == line_id:
                return line
        raise NotFoundError("Cargo line", line_id)

    async def update_cargo_line(
        self,
        draft_id: UUID,
        version: int,
        line_id: UUID,
        patch: CargoLineUpdate,
        changed_by: Optional[UUID] = None,
    ) -> CargoLine:
        changes = patch.model_dump(exclude_unset=True)
        for field in REQUIRED_LINE_FIELDS:
            if field in changes and changes[field] is None:
                raise ValidationError(field, "Cargo line field cannot be cleared")

        async with self.locks.hold(draft_key(draft_id)):
            draft = await self._load_for_update(draft_id, version)
            line = self._find_line(draft, line_id)
            changed_fields = []
            for field, value in changes.items():
                if getattr(line, field) == value:
                    continue
                setattr(line, field, value)
                changed_fields.append(field)
            if not changed_fields:
                return line

            self._apply_totals(draft)
            self._log(draft, HistoryAction.CARGO_UPDATED, changed_by, field_changed="cargo_lines",
                      new_value=str(line.id), detail={"fields": sorted(changed_fields)})
            self._content_changed(draft, changed_by, reason="cargo line updated")
            await self.db.commit()
        return line

    async def remove_cargo_line(
        self,
        draft_id: UUID,
        version: int,
        line_id: UUID,
        changed_by: Optional[UUID] = None,
    ) -> DraftRecord:
        async with self.locks.hold(draft_key(draft_id)):
            draft = await self._load_for_update(draft_id, version)
            line = self._find_line(draft, line_id)
            draft.cargo_lines.remove(line)
            self._apply_totals(draft)
            self._log(draft, HistoryAction.CARGO_REMOVED, changed_by, field_changed="cargo_lines",
                      old_value=str(line_id))
            self._content_changed(draft, changed_by, reason="cargo line removed")
            await self.db.commit()
        return draft

    async def recompute_totals(self, draft_id: UUID) -> DraftRecord:
        """Recompute weight/value/piece totals from the stored cargo lines."""
        async with self.locks.hold(draft_key(draft_id)):
            draft = await self.get(draft_id)
            self._apply_totals(draft)
            await self.db.commit()
        return draft

    def _build_charge(self, charges_in: FreightChargeIn) -> FreightCharge:
        return FreightCharge(
            base_rate=charges_in.base_rate,
            fuel_surcharge=charges_in.fuel_surcharge,
            accessorial_charges=charges_in.accessorial_charges,
            total_charges=compute_total_charges(
                charges_in.base_rate, charges_in.fuel_surcharge, charges_in.accessorial_charges
            ),
            payment_terms=charges_in.payment_terms,
            bill_to=charges_in.bill_to,
        )

    async def set_freight_charges(
        self,
        draft_id: UUID,
        version: int,
        charges_in: FreightChargeIn,
        changed_by: Optional[UUID] = None,
    ) -> FreightCharge:
        async with self.locks.hold(draft_key(draft_id)):
            draft = await self._load_for_update(draft_id, version)
            charge = draft.freight_charge
            if charge is None:
                charge = self._build_charge(charges_in)
                draft.freight_charge = charge
            else:
                for field, value in charges_in.model_dump().items():
                    setattr(charge, field, value)
                charge.total_charges = compute_total_charges(
                    charge.base_rate, charge.fuel_surcharge, charge.accessorial_charges
                )
            self._log(draft, HistoryAction.CHARGES_SET, changed_by, field_changed="freight_charges",
                      new_value=str(charge.total_charges))
            self._content_changed(draft, changed_by, reason="freight charges changed")
            await self.db.commit()
        return charge

    async def add_note(self, draft_id: UUID, note_in: NoteCreate, created_by: Optional[UUID] = None) -> DraftNote:
        """Attach a collaboration note. Notes are not document content."""
        draft = await self.get(draft_id)
        note = DraftNote(draft_id=draft.id, content=note_in.content, note_type=note_in.note_type,
                         created_by=created_by)
        self.db.add(note)
        await self.db.flush()
        self._log(draft, HistoryAction.NOTE_ADDED, created_by, new_value=str(note.id))
        await self.db.commit()
        return note

    async def list_notes(self, draft_id: UUID) -> List[DraftNote]:
        result = await self.db.execute(
            select(DraftNote).where(DraftNote.draft_id == draft_id).order_by(DraftNote.created_at)
        )
        return list(result.scalars().all())

    async def list_history(self, draft_id: UUID) -> List[DraftHistoryEntry]:
        result = await self.db.execute(
            select(DraftHistoryEntry)
            .where(DraftHistoryEntry.draft_id == draft_id)
            .order_by(DraftHistoryEntry.created_at)
        )
        return list(result.scalars().all())

    async def soft_delete(self, draft_id: UUID, version: int, changed_by: Optional[UUID] = None) -> DraftRecord:
        async with self.locks.hold(draft_key(draft_id)):
            draft = await self._load_for_update(draft_id, version)
            draft.is_active = False
            draft.version += 1
            self._log(draft, HistoryAction.DELETED, changed_by)
            await self.db.commit()
        logger.info(f"Draft {draft_id} soft-deleted")
        return draft
