"""Commission and net-amount math shared by every code path that shows or stores money."""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import NamedTuple

from coffee_contracts.services.contract_state_machine import ContractValidationError

CENT = Decimal("0.01")


class Settlement(NamedTuple):
    commission: Decimal
    net: Decimal


def to_money(value) -> Decimal:
    """Coerce to a 2-decimal Decimal, rounding half-up."""
    try:
        return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError) as exc:
        raise ContractValidationError(f"Not a valid amount: {value!r}") from exc


def compute_settlement(total, rate) -> Settlement:
    """Split ``total`` into the platform commission at ``rate`` percent and the seller's net."""
    total = to_money(total)
    rate = Decimal(str(rate))
    commission = (total * rate / Decimal(100)).quantize(CENT, rounding=ROUND_HALF_UP)
    return Settlement(commission=commission, net=total - commission)


def build_line_items(items: list[dict]) -> tuple[list[dict], Decimal]:
    """Validate line items and compute each line total plus the grand total.

    Each item needs a non-empty ``name`` and positive ``quantity`` and
    ``unit_price``. Returns JSON-ready items (amounts as strings) and the total.
    """
    if not items:
        raise ContractValidationError("A contract needs at least one line item", field="items")

    lines: list[dict] = []
    total = Decimal("0")
    for index, item in enumerate(items):
        name = (item.get("name") or "").strip()
        if not name:
            raise ContractValidationError(f"Item {index + 1} has no name", field="items")
        try:
            quantity = Decimal(str(item.get("quantity")))
        except (InvalidOperation, ValueError):
            raise ContractValidationError(f"Item {index + 1} has an invalid quantity", field="items")
        unit_price = to_money(item.get("unit_price"))
        if quantity <= 0 or unit_price <= 0:
            raise ContractValidationError(
                f"Item {index + 1} must have a positive quantity and unit price", field="items"
            )
        line_total = to_money(quantity * unit_price)
        total += line_total
        lines.append({
            "name": name,
            "quantity": str(quantity),
            "unit_price": str(unit_price),
            "total": str(line_total),
        })

    if total <= 0:
        raise ContractValidationError("Contract total must be positive", field="items")
    return lines, total
