from typing import Protocol, runtime_checkable


@runtime_checkable
class DocumentRenderer(Protocol):
    """External document-rendering service (PDF etc.).

    Must be a pure function of the snapshot: the same snapshot always
    renders to the same bytes.
    """

    def render(self, snapshot) -> bytes:
        ...


class PlainTextRenderer:
    """Human-readable text rendering of a BoL snapshot."""

    def render(self, snapshot) -> bytes:
        lines = [f"BILL OF LADING {snapshot.bol_number}", ""]
        for slot, party_id in snapshot.parties.items():
            lines.append(f"{slot.title():<10} {party_id or '-'}")
        lines.append(f"Pickup     {snapshot.pickup_date or '-'}")
        lines.append(f"Delivery   {snapshot.delivery_date or '-'}")
        lines.append("")
        lines.append("Cargo:")
        for i, line in enumerate(snapshot.cargo_lines, start=1):
            hazmat = f" HAZMAT {line.hazmat_class or ''} {line.un_number or ''}".rstrip() if line.is_hazmat else ""
            lines.append(
                f"  {i}. {line.description} x{line.quantity} {line.unit} "
                f"weight={line.weight} value={line.value}{hazmat}"
            )
        lines.append(
            f"Totals: weight={snapshot.totals.weight} value={snapshot.totals.value} "
            f"pieces={snapshot.totals.pieces}"
        )
        if snapshot.freight_charges:
            fc = snapshot.freight_charges
            lines.append(
                f"Freight: base={fc.base_rate} fuel={fc.fuel_surcharge} "
                f"accessorial={fc.accessorial_charges} total={fc.total_charges} "
                f"({fc.payment_terms}, bill to {fc.bill_to})"
            )
        if snapshot.special_instructions:
            lines.append(f"Instructions: {snapshot.special_instructions}")
        return ("\n".join(lines) + "\n").encode("utf-8")
