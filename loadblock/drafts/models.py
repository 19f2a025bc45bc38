from enum import Enum
from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import relationship
from loadblock.database import Base
from loadblock.lifecycle.states import BoLStatus
from loadblock.shared.models import AuditMixin, JSONType, enum_column


class DraftSyncState(str, Enum):
    OPEN = "open"              # editable collaboration record
    ACTIVATING = "activating"  # frozen while version 1 is being committed
    ACTIVATED = "activated"    # read-mostly mirror of the ledger record


class UnitType(str, Enum):
    PIECES = "pieces"
    PALLETS = "pallets"
    TONS = "tons"
    LBS = "lbs"
    KG = "kg"
    CASES = "cases"
    DRUMS = "drums"


class DimensionUnit(str, Enum):
    IN = "in"
    FT = "ft"
    CM = "cm"
    M = "m"


class PaymentTerms(str, Enum):
    PREPAID = "prepaid"
    COLLECT = "collect"
    THIRD_PARTY = "third_party"


class BillTo(str, Enum):
    SHIPPER = "shipper"
    CONSIGNEE = "consignee"
    THIRD_PARTY = "third_party"


class NoteType(str, Enum):
    GENERAL = "general"
    STATUS_CHANGE = "status_change"
    ISSUE = "issue"
    DELIVERY = "delivery"


class HistoryAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    CARGO_ADDED = "cargo_added"
    CARGO_UPDATED = "cargo_updated"
    CARGO_REMOVED = "cargo_removed"
    CHARGES_SET = "charges_set"
    NOTE_ADDED = "note_added"
    APPROVED = "approved"
    APPROVAL_WITHDRAWN = "approval_withdrawn"
    APPROVALS_INVALIDATED = "approvals_invalidated"
    REJECTED = "rejected"
    ACTIVATED = "activated"
    STATUS_CHANGED = "status_changed"
    RECONCILED = "reconciled"
    DELETED = "deleted"


class DraftRecord(Base, AuditMixin):
    """Mutable, collaboratively edited BoL. Mirrors the ledger once activated."""
    __tablename__ = "pending_bols"
    __table_args__ = (
        # Non-pending requires both approvals; a quorate draft stays pending until activation commits
        CheckConstraint(
            "status = 'pending' OR (shipper_approved AND carrier_approved)",
            name="chk_approval_logic",
        ),
    )

    bol_number = Column(String(50), unique=True, nullable=True)  # BOL-YYYY-NNNNNN, reserved at freeze
    status = Column(enum_column(BoLStatus, name="bol_status_enum"), default=BoLStatus.PENDING, nullable=False)
    sync_state = Column(enum_column(DraftSyncState, name="draft_sync_state_enum"),
                        default=DraftSyncState.OPEN, nullable=False)

    created_by = Column(Uuid(as_uuid=True), nullable=True)
    shipper_id = Column(Uuid(as_uuid=True), nullable=True)
    consignee_id = Column(Uuid(as_uuid=True), nullable=True)
    carrier_id = Column(Uuid(as_uuid=True), nullable=True)
    broker_id = Column(Uuid(as_uuid=True), nullable=True)

    pickup_date = Column(Date, nullable=True)
    delivery_date = Column(Date, nullable=True)
    special_instructions = Column(Text, nullable=True)

    # Derived from cargo lines by recompute_totals, never authored directly
    total_weight = Column(Numeric(12, 2), default=0, nullable=False)
    total_value = Column(Numeric(14, 2), default=0, nullable=False)
    total_pieces = Column(Integer, default=0, nullable=False)

    hazmat_info = Column(JSONType, nullable=True)

    shipper_approved = Column(Boolean, default=False, nullable=False)
    shipper_approved_at = Column(DateTime, nullable=True)
    carrier_approved = Column(Boolean, default=False, nullable=False)
    carrier_approved_at = Column(DateTime, nullable=True)

    # Ledger linkage; record id is reserved at freeze so retries hit the same key
    immutable_record_id = Column(Uuid(as_uuid=True), nullable=True, index=True)
    blockchain_tx_id = Column(String(255), nullable=True)
    document_hash = Column(String(64), nullable=True)

    version = Column(Integer, default=1, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    cargo_lines = relationship("CargoLine", back_populates="draft", cascade="all, delete-orphan",
                               order_by="CargoLine.line_order", lazy="selectin")
    freight_charge = relationship("FreightCharge", back_populates="draft", uselist=False, lazy="selectin",
                                  cascade="all, delete-orphan")
    notes = relationship("DraftNote", back_populates="draft", cascade="all, delete-orphan",
                         order_by="DraftNote.created_at")
    history = relationship("DraftHistoryEntry", back_populates="draft", cascade="all, delete-orphan",
                           order_by="DraftHistoryEntry.created_at")

    @property
    def parties(self) -> dict:
        return {
            "shipper": self.shipper_id,
            "consignee": self.consignee_id,
            "carrier": self.carrier_id,
            "broker": self.broker_id,
        }

    @property
    def quorum(self) -> bool:
        return bool(self.shipper_approved and self.carrier_approved)


class CargoLine(Base, AuditMixin):
    __tablename__ = "pending_bol_cargo_items"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="chk_cargo_quantity"),
        CheckConstraint("weight >= 0", name="chk_cargo_weight"),
        CheckConstraint("value >= 0", name="chk_cargo_value"),
    )

    draft_id = Column(ForeignKey("pending_bols.id", ondelete="CASCADE"), nullable=False, index=True)
    description = Column(Text, nullable=False)
    quantity = Column(Integer, nullable=False)
    unit = Column(enum_column(UnitType, name="unit_type_enum"), default=UnitType.PIECES, nullable=False)
    weight = Column(Numeric(10, 2), nullable=False)
    value = Column(Numeric(12, 2), nullable=False)
    packaging = Column(String(100), nullable=True)

    length = Column(Numeric(8, 2), nullable=True)
    width = Column(Numeric(8, 2), nullable=True)
    height = Column(Numeric(8, 2), nullable=True)
    dimension_unit = Column(enum_column(DimensionUnit, name="dimension_unit_enum"),
                            default=DimensionUnit.IN, nullable=False)

    is_hazmat = Column(Boolean, default=False, nullable=False)
    hazmat_class = Column(String(20), nullable=True)
    un_number = Column(String(10), nullable=True)

    line_order = Column(Integer, default=1, nullable=False)

    draft = relationship("DraftRecord", back_populates="cargo_lines")


class FreightCharge(Base, AuditMixin):
    __tablename__ = "pending_bol_freight_charges"
    __table_args__ = (
        CheckConstraint(
            "ABS(total_charges - (base_rate + fuel_surcharge + accessorial_charges)) < 0.005",
            name="chk_total_charges",
        ),
    )

    draft_id = Column(ForeignKey("pending_bols.id", ondelete="CASCADE"), nullable=False, unique=True)
    base_rate = Column(Numeric(10, 2), default=0, nullable=False)
    fuel_surcharge = Column(Numeric(10, 2), default=0, nullable=False)
    accessorial_charges = Column(Numeric(10, 2), default=0, nullable=False)
    total_charges = Column(Numeric(10, 2), default=0, nullable=False)
    payment_terms = Column(enum_column(PaymentTerms, name="payment_terms_enum"),
                           default=PaymentTerms.PREPAID, nullable=False)
    bill_to = Column(enum_column(BillTo, name="bill_to_enum"), default=BillTo.SHIPPER, nullable=False)

    draft = relationship("DraftRecord", back_populates="freight_charge")


class DraftNote(Base, AuditMixin):
    __tablename__ = "pending_bol_notes"

    draft_id = Column(ForeignKey("pending_bols.id", ondelete="CASCADE"), nullable=False, index=True)
    content = Column(Text, nullable=False)
    note_type = Column(enum_column(NoteType, name="note_type_enum"), default=NoteType.GENERAL, nullable=False)
    created_by = Column(Uuid(as_uuid=True), nullable=True)

    draft = relationship("DraftRecord", back_populates="notes")


class DraftHistoryEntry(Base, AuditMixin):
    """Collaboration history: edits, approvals, rejections, status mirror updates."""
    __tablename__ = "pending_bol_history"

    draft_id = Column(ForeignKey("pending_bols.id", ondelete="CASCADE"), nullable=False, index=True)
    action = Column(enum_column(HistoryAction, name="history_action_enum"), nullable=False)
    field_changed = Column(String(100), nullable=True)
    old_value = Column(Text, nullable=True)
    new_value = Column(Text, nullable=True)
    detail = Column(JSONType, nullable=True)
    changed_by = Column(Uuid(as_uuid=True), nullable=True)

    draft = relationship("DraftRecord", back_populates="history")
