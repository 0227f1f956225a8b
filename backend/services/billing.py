"""Invoice money arithmetic shared by the service and the client preview.

Both sides import these functions so a previewed invoice and the one the
service stores agree to the cent.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable, Mapping

from models import InvoiceStatus

CENT = Decimal("0.01")
HUNDRED = Decimal("100")
ZERO = Decimal("0.00")

TAX_RATE = os.getenv("CADUCEUS_TAX_RATE", "0.00")


def to_decimal(value: Any) -> Decimal:
    if isinstance(value, float):
        value = repr(value)
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"Not a decimal amount: {value!r}") from exc
    if not result.is_finite():
        raise ValueError(f"Not a decimal amount: {value!r}")
    return result


def money(value: Any) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def clamp_percent(value: Any) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    pct = to_decimal(value)
    if pct < 0:
        return Decimal("0")
    if pct > HUNDRED:
        return HUNDRED
    return pct


def configured_tax_rate() -> Decimal:
    return clamp_percent(TAX_RATE)


@dataclass(frozen=True)
class InvoiceTotals:
    total_amount: Decimal
    discount_percent: Decimal
    discount_amount: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    net_amount: Decimal


def _field(item: Any, name: str) -> Any:
    if isinstance(item, Mapping):
        return item[name]
    return getattr(item, name)


def line_subtotal(line_items: Iterable[Any]) -> Decimal:
    """Unrounded sum of quantity * unit_price; rejects malformed lines."""
    subtotal = Decimal("0")
    for index, item in enumerate(line_items):
        quantity = _field(item, "quantity")
        unit_price = to_decimal(_field(item, "unit_price"))
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise ValueError(f"Line item {index}: quantity must be a whole number of at least 1")
        if unit_price <= 0:
            raise ValueError(f"Line item {index}: unit price must be greater than 0")
        subtotal += unit_price * quantity
    return subtotal


def compute_totals(
    line_items: Iterable[Any],
    discount_percent: Any = 0,
    tax_rate: Any = 0,
) -> InvoiceTotals:
    total = money(line_subtotal(line_items))
    pct = clamp_percent(discount_percent)
    rate = clamp_percent(tax_rate)
    discount = money(total * pct / HUNDRED)
    taxable = total - discount
    tax = money(taxable * rate / HUNDRED)
    return InvoiceTotals(
        total_amount=total,
        discount_percent=pct,
        discount_amount=discount,
        tax_rate=rate,
        tax_amount=tax,
        net_amount=money(taxable + tax),
    )


preview_invoice = compute_totals


def amount_paid(payments: Iterable[Any]) -> Decimal:
    return money(sum((to_decimal(_field(p, "amount")) for p in payments), Decimal("0")))


def amount_due(net_amount: Any, paid: Any) -> Decimal:
    return money(to_decimal(net_amount) - to_decimal(paid))


def derive_payment_status(net_amount: Any, paid: Any) -> InvoiceStatus:
    """Status the service assigns after a payment; never chosen by the actor."""
    if amount_due(net_amount, paid) > ZERO:
        return InvoiceStatus.PARTIALLY_PAID
    return InvoiceStatus.PAID
