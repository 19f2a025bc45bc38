from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID
from pydantic import BaseModel, ConfigDict, Field

from loadblock.drafts.models import BillTo, DimensionUnit, HistoryAction, NoteType, PaymentTerms, UnitType
from loadblock.lifecycle.states import BoLStatus


class CargoLineCreate(BaseModel):
    description: str = Field(..., min_length=1)
    quantity: int = Field(..., gt=0)
    unit: UnitType = UnitType.PIECES
    weight: Decimal = Field(..., ge=0)
    value: Decimal = Field(..., ge=0)
    packaging: Optional[str] = None
    length: Optional[Decimal] = Field(None, ge=0)
    width: Optional[Decimal] = Field(None, ge=0)
    height: Optional[Decimal] = Field(None, ge=0)
    dimension_unit: DimensionUnit = DimensionUnit.IN
    is_hazmat: bool = False
    hazmat_class: Optional[str] = None
    un_number: Optional[str] = None


class CargoLineUpdate(BaseModel):
    description: Optional[str] = Field(None, min_length=1)
    quantity: Optional[int] = Field(None, gt=0)
    unit: Optional[UnitType] = None
    weight: Optional[Decimal] = Field(None, ge=0)
    value: Optional[Decimal] = Field(None, ge=0)
    packaging: Optional[str] = None
    length: Optional[Decimal] = Field(None, ge=0)
    width: Optional[Decimal] = Field(None, ge=0)
    height: Optional[Decimal] = Field(None, ge=0)
    dimension_unit: Optional[DimensionUnit] = None
    is_hazmat: Optional[bool] = None
    hazmat_class: Optional[str] = None
    un_number: Optional[str] = None


class CargoLineResponse(CargoLineCreate):
    id: UUID
    draft_id: UUID
    line_order: int

    model_config = ConfigDict(from_attributes=True)


class FreightChargeIn(BaseModel):
    base_rate: Decimal = Field(Decimal("0"), ge=0)
    fuel_surcharge: Decimal = Field(Decimal("0"), ge=0)
    accessorial_charges: Decimal = Field(Decimal("0"), ge=0)
    payment_terms: PaymentTerms = PaymentTerms.PREPAID
    bill_to: BillTo = BillTo.SHIPPER


class FreightChargeResponse(FreightChargeIn):
    total_charges: Decimal

    model_config = ConfigDict(from_attributes=True)


class DraftCreate(BaseModel):
    shipper_id: Optional[UUID] = None
    consignee_id: Optional[UUID] = None
    carrier_id: Optional[UUID] = None
    broker_id: Optional[UUID] = None
    pickup_date: Optional[date] = None
    delivery_date: Optional[date] = None
    special_instructions: Optional[str] = None
    hazmat_info: Optional[Dict[str, Any]] = None
    cargo_lines: List[CargoLineCreate] = []
    freight_charges: Optional[FreightChargeIn] = None


class DraftPatch(BaseModel):
    """Field-level edit of a draft; unset fields are left untouched."""
    shipper_id: Optional[UUID] = None
    consignee_id: Optional[UUID] = None
    carrier_id: Optional[UUID] = None
    broker_id: Optional[UUID] = None
    pickup_date: Optional[date] = None
    delivery_date: Optional[date] = None
    special_instructions: Optional[str] = None
    hazmat_info: Optional[Dict[str, Any]] = None


class NoteCreate(BaseModel):
    content: str = Field(..., min_length=1)
    note_type: NoteType = NoteType.GENERAL


class NoteResponse(NoteCreate):
    id: UUID
    draft_id: UUID
    created_by: Optional[UUID] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class HistoryEntryResponse(BaseModel):
    id: UUID
    draft_id: UUID
    action: HistoryAction
    field_changed: Optional[str] = None
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    detail: Optional[Dict[str, Any]] = None
    changed_by: Optional[UUID] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class DraftResponse(BaseModel):
    id: UUID
    bol_number: Optional[str] = None
    status: BoLStatus
    shipper_id: Optional[UUID] = None
    consignee_id: Optional[UUID] = None
    carrier_id: Optional[UUID] = None
    broker_id: Optional[UUID] = None
    pickup_date: Optional[date] = None
    delivery_date: Optional[date] = None
    special_instructions: Optional[str] = None
    total_weight: Decimal
    total_value: Decimal
    total_pieces: int
    hazmat_info: Optional[Dict[str, Any]] = None
    shipper_approved: bool
    shipper_approved_at: Optional[datetime] = None
    carrier_approved: bool
    carrier_approved_at: Optional[datetime] = None
    immutable_record_id: Optional[UUID] = None
    version: int
    is_active: bool
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)
