from sqlalchemy import Column, ForeignKey, Integer, String

from loadblock.database import Base
from loadblock.lifecycle.states import BoLStatus
from loadblock.shared.models import AuditMixin, TimestampMixin, enum_column


class ImmutableRecord(Base, AuditMixin):
    """Relational pointer to a ledger-anchored BoL.

    Created only after the ledger accepted version 1. ``current_*`` columns
    are a cache of the latest ledger entry; the ledger wins on disagreement.
    """
    __tablename__ = "bill_of_lading_records"

    draft_id = Column(ForeignKey("pending_bols.id"), nullable=False, unique=True)  # at-most-once activation
    bol_number = Column(String(50), nullable=False, unique=True)
    genesis_tx_id = Column(String(255), nullable=False)
    current_status = Column(enum_column(BoLStatus, name="bol_status_enum"),
                            nullable=False)
    current_sequence = Column(Integer, nullable=False, default=1)
    current_hash = Column(String(64), nullable=False)


class BolNumberSequence(Base, TimestampMixin):
    """Last issued BoL sequence per calendar year."""
    __tablename__ = "bol_number_sequences"

    year = Column(Integer, primary_key=True)
    last_value = Column(Integer, nullable=False, default=0)
