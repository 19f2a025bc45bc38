"""Canonical document snapshot of a BoL.

The snapshot holds document content only (parties, dates, cargo, charges,
hazmat, totals). Lifecycle status is not part of it, so adjacent
statuses over identical content hash to the same blob.
"""
import json
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, field_serializer

SNAPSHOT_SCHEMA_VERSION = 1
CENTS = Decimal("0.01")


def _money(value) -> Optional[str]:
    if value is None:
        return None
    return str(Decimal(value).quantize(CENTS))


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class CargoLineSnapshot(_Frozen):
    line_order: int
    description: str
    quantity: int
    unit: str
    weight: Decimal
    value: Decimal
    packaging: Optional[str] = None
    length: Optional[Decimal] = None
    width: Optional[Decimal] = None
    height: Optional[Decimal] = None
    dimension_unit: str = "in"
    is_hazmat: bool = False
    hazmat_class: Optional[str] = None
    un_number: Optional[str] = None

    @field_serializer("weight", "value", "length", "width", "height")
    def _ser_money(self, v):
        return _money(v)


class FreightChargeSnapshot(_Frozen):
    base_rate: Decimal
    fuel_surcharge: Decimal
    accessorial_charges: Decimal
    total_charges: Decimal
    payment_terms: str
    bill_to: str

    @field_serializer("base_rate", "fuel_surcharge", "accessorial_charges", "total_charges")
    def _ser_money(self, v):
        return _money(v)


class TotalsSnapshot(_Frozen):
    weight: Decimal
    value: Decimal
    pieces: int

    @field_serializer("weight", "value")
    def _ser_money(self, v):
        return _money(v)


class BoLSnapshot(_Frozen):
    schema_version: int = SNAPSHOT_SCHEMA_VERSION
    bol_number: str
    draft_id: str
    parties: Dict[str, Optional[str]]
    pickup_date: Optional[date] = None
    delivery_date: Optional[date] = None
    special_instructions: Optional[str] = None
    cargo_lines: List[CargoLineSnapshot] = []
    freight_charges: Optional[FreightChargeSnapshot] = None
    totals: TotalsSnapshot
    hazmat_info: Optional[Dict[str, Any]] = None


def _enum_value(v) -> str:
    return getattr(v, "value", v)


def build_snapshot(draft, bol_number: str) -> BoLSnapshot:
    """Snapshot a draft's document content. Cargo lines and charges must be loaded."""
    lines = sorted(draft.cargo_lines, key=lambda line: line.line_order)
    charge = draft.freight_charge
    return BoLSnapshot(
        bol_number=bol_number,
        draft_id=str(draft.id),
        parties={slot: (str(pid) if pid is not None else None) for slot, pid in draft.parties.items()},
        pickup_date=draft.pickup_date,
        delivery_date=draft.delivery_date,
        special_instructions=draft.special_instructions,
        cargo_lines=[
            CargoLineSnapshot(
                line_order=line.line_order,
                description=line.description,
                quantity=line.quantity,
                unit=_enum_value(line.unit),
                weight=line.weight,
                value=line.value,
                packaging=line.packaging,
                length=line.length,
                width=line.width,
                height=line.height,
                dimension_unit=_enum_value(line.dimension_unit),
                is_hazmat=bool(line.is_hazmat),
                hazmat_class=line.hazmat_class,
                un_number=line.un_number,
            )
            for line in lines
        ],
        freight_charges=FreightChargeSnapshot(
            base_rate=charge.base_rate,
            fuel_surcharge=charge.fuel_surcharge,
            accessorial_charges=charge.accessorial_charges,
            total_charges=charge.total_charges,
            payment_terms=_enum_value(charge.payment_terms),
            bill_to=_enum_value(charge.bill_to),
        ) if charge is not None else None,
        totals=TotalsSnapshot(
            weight=draft.total_weight or 0,
            value=draft.total_value or 0,
            pieces=draft.total_pieces or 0,
        ),
        hazmat_info=draft.hazmat_info,
    )


def canonical_bytes(snapshot: BoLSnapshot) -> bytes:
    """Deterministic serialization: sorted keys, compact separators, UTF-8."""
    payload = snapshot.model_dump(mode="json")
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def load_snapshot(data: bytes) -> BoLSnapshot:
    return BoLSnapshot.model_validate_json(data)
