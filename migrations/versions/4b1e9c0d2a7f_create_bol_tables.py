"""create bill of lading tables

Revision ID: 4b1e9c0d2a7f
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '4b1e9c0d2a7f'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ENUMS = {
    'bol_status_enum': ('pending', 'approved', 'assigned', 'accepted', 'picked_up',
                        'en_route', 'delivered', 'unpaid', 'paid'),
    'draft_sync_state_enum': ('open', 'activating', 'activated'),
    'unit_type_enum': ('pieces', 'pallets', 'tons', 'lbs', 'kg', 'cases', 'drums'),
    'dimension_unit_enum': ('in', 'ft', 'cm', 'm'),
    'payment_terms_enum': ('prepaid', 'collect', 'third_party'),
    'bill_to_enum': ('shipper', 'consignee', 'third_party'),
    'note_type_enum': ('general', 'status_change', 'issue', 'delivery'),
    'history_action_enum': ('created', 'updated', 'cargo_added', 'cargo_updated', 'cargo_removed',
                            'charges_set', 'note_added', 'approved', 'approval_withdrawn',
                            'approvals_invalidated', 'rejected', 'activated', 'status_changed',
                            'reconciled', 'deleted'),
    'audit_event_type_enum': ('BOL_ACTIVATED', 'BOL_STATUS_CHANGED', 'BOL_REJECTED', 'BOL_RECONCILED'),
}


def enum(name):
    return postgresql.ENUM(*ENUMS[name], name=name, create_type=False)


def timestamps():
    return [
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    ]


def upgrade() -> None:
    for name, values in ENUMS.items():
        enum_values = ", ".join(f"'{v}'" for v in values)
        op.execute(f"DO $$ BEGIN IF NOT EXISTS (SELECT 1 FROM pg_type WHERE typname = '{name}') THEN CREATE TYPE {name} AS ENUM ({enum_values}); END IF; END $$;")

    op.create_table(
        'pending_bols',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        *timestamps(),
        sa.Column('bol_number', sa.String(50), nullable=True, unique=True),
        sa.Column('status', enum('bol_status_enum'), nullable=False),
        sa.Column('sync_state', enum('draft_sync_state_enum'), nullable=False),
        sa.Column('created_by', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('shipper_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('consignee_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('carrier_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('broker_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('pickup_date', sa.Date(), nullable=True),
        sa.Column('delivery_date', sa.Date(), nullable=True),
        sa.Column('special_instructions', sa.Text(), nullable=True),
        sa.Column('total_weight', sa.Numeric(12, 2), nullable=False),
        sa.Column('total_value', sa.Numeric(14, 2), nullable=False),
        sa.Column('total_pieces', sa.Integer(), nullable=False),
        sa.Column('hazmat_info', postgresql.JSONB(), nullable=True),
        sa.Column('shipper_approved', sa.Boolean(), nullable=False),
        sa.Column('shipper_approved_at', sa.DateTime(), nullable=True),
        sa.Column('carrier_approved', sa.Boolean(), nullable=False),
        sa.Column('carrier_approved_at', sa.DateTime(), nullable=True),
        sa.Column('immutable_record_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('blockchain_tx_id', sa.String(255), nullable=True),
        sa.Column('document_hash', sa.String(64), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.CheckConstraint("status = 'pending' OR (shipper_approved AND carrier_approved)",
                           name='chk_approval_logic'),
    )
    op.create_index('ix_pending_bols_immutable_record_id', 'pending_bols', ['immutable_record_id'])

    op.create_table(
        'pending_bol_cargo_items',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        *timestamps(),
        sa.Column('draft_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('pending_bols.id', ondelete='CASCADE'), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit', enum('unit_type_enum'), nullable=False),
        sa.Column('weight', sa.Numeric(10, 2), nullable=False),
        sa.Column('value', sa.Numeric(12, 2), nullable=False),
        sa.Column('packaging', sa.String(100), nullable=True),
        sa.Column('length', sa.Numeric(8, 2), nullable=True),
        sa.Column('width', sa.Numeric(8, 2), nullable=True),
        sa.Column('height', sa.Numeric(8, 2), nullable=True),
        sa.Column('dimension_unit', enum('dimension_unit_enum'), nullable=False),
        sa.Column('is_hazmat', sa.Boolean(), nullable=False),
        sa.Column('hazmat_class', sa.String(20), nullable=True),
        sa.Column('un_number', sa.String(10), nullable=True),
        sa.Column('line_order', sa.Integer(), nullable=False),
        sa.CheckConstraint('quantity > 0', name='chk_cargo_quantity'),
        sa.CheckConstraint('weight >= 0', name='chk_cargo_weight'),
        sa.CheckConstraint('value >= 0', name='chk_cargo_value'),
    )
    op.create_index('ix_pending_bol_cargo_items_draft_id', 'pending_bol_cargo_items', ['draft_id'])

    op.create_table(
        'pending_bol_freight_charges',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        *timestamps(),
        sa.Column('draft_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('pending_bols.id', ondelete='CASCADE'), nullable=False, unique=True),
        sa.Column('base_rate', sa.Numeric(10, 2), nullable=False),
        sa.Column('fuel_surcharge', sa.Numeric(10, 2), nullable=False),
        sa.Column('accessorial_charges', sa.Numeric(10, 2), nullable=False),
        sa.Column('total_charges', sa.Numeric(10, 2), nullable=False),
        sa.Column('payment_terms', enum('payment_terms_enum'), nullable=False),
        sa.Column('bill_to', enum('bill_to_enum'), nullable=False),
        sa.CheckConstraint(
            'ABS(total_charges - (base_rate + fuel_surcharge + accessorial_charges)) < 0.005',
            name='chk_total_charges',
        ),
    )

    op.create_table(
        'pending_bol_notes',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        *timestamps(),
        sa.Column('draft_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('pending_bols.id', ondelete='CASCADE'), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('note_type', enum('note_type_enum'), nullable=False),
        sa.Column('created_by', postgresql.UUID(as_uuid=True), nullable=True),
    )
    op.create_index('ix_pending_bol_notes_draft_id', 'pending_bol_notes', ['draft_id'])

    op.create_table(
        'pending_bol_history',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        *timestamps(),
        sa.Column('draft_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('pending_bols.id', ondelete='CASCADE'), nullable=False),
        sa.Column('action', enum('history_action_enum'), nullable=False),
        sa.Column('field_changed', sa.String(100), nullable=True),
        sa.Column('old_value', sa.Text(), nullable=True),
        sa.Column('new_value', sa.Text(), nullable=True),
        sa.Column('detail', postgresql.JSONB(), nullable=True),
        sa.Column('changed_by', postgresql.UUID(as_uuid=True), nullable=True),
    )
    op.create_index('ix_pending_bol_history_draft_id', 'pending_bol_history', ['draft_id'])

    op.create_table(
        'bill_of_lading_records',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        *timestamps(),
        sa.Column('draft_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('pending_bols.id'),
                  nullable=False, unique=True),
        sa.Column('bol_number', sa.String(50), nullable=False, unique=True),
        sa.Column('genesis_tx_id', sa.String(255), nullable=False),
        sa.Column('current_status', enum('bol_status_enum'), nullable=False),
        sa.Column('current_sequence', sa.Integer(), nullable=False),
        sa.Column('current_hash', sa.String(64), nullable=False),
    )

    op.create_table(
        'bol_number_sequences',
        sa.Column('year', sa.Integer(), primary_key=True),
        *timestamps(),
        sa.Column('last_value', sa.Integer(), nullable=False),
    )

    op.create_table(
        'audit_events',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        *timestamps(),
        sa.Column('event_type', enum('audit_event_type_enum'), nullable=False),
        sa.Column('record_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('draft_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('actor_id', sa.String(255), nullable=True),
        sa.Column('from_status', sa.String(32), nullable=True),
        sa.Column('to_status', sa.String(32), nullable=True),
        sa.Column('detail', postgresql.JSONB(), nullable=True),
    )
    op.create_index('ix_audit_events_record_id', 'audit_events', ['record_id'])
    op.create_index('ix_audit_events_draft_id', 'audit_events', ['draft_id'])


def downgrade() -> None:
    op.drop_index('ix_audit_events_draft_id', table_name='audit_events')
    op.drop_index('ix_audit_events_record_id', table_name='audit_events')
    op.drop_table('audit_events')
    op.drop_table('bol_number_sequences')
    op.drop_table('bill_of_lading_records')
    op.drop_index('ix_pending_bol_history_draft_id', table_name='pending_bol_history')
    op.drop_table('pending_bol_history')
    op.drop_index('ix_pending_bol_notes_draft_id', table_name='pending_bol_notes')
    op.drop_table('pending_bol_notes')
    op.drop_table('pending_bol_freight_charges')
    op.drop_index('ix_pending_bol_cargo_items_draft_id', table_name='pending_bol_cargo_items')
    op.drop_table('pending_bol_cargo_items')
    op.drop_index('ix_pending_bols_immutable_record_id', table_name='pending_bols')
    op.drop_table('pending_bols')
    for name in reversed(list(ENUMS)):
        op.execute(f"DROP TYPE IF EXISTS {name}")
