from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional

# The remote ledger stores money as numeric(18,2); Postgres rounds half away
# from zero, so we do the same to avoid cent drift between nodes.
MONEY_Q = Decimal("0.01")
ZERO = Decimal("0")
HUNDRED = Decimal("100")


def q2(v) -> Decimal:
    return Decimal(str(v or 0)).quantize(MONEY_Q, rounding=ROUND_HALF_UP)


def clamp_discount(pct) -> Decimal:
    p = Decimal(str(pct or 0))
    if p < ZERO:
        return ZERO
    if p > HUNDRED:
        return HUNDRED
    return p


def line_amount(unit_price, qty: int) -> Decimal:
    return q2(Decimal(str(unit_price or 0)) * int(qty))


def compute_totals(
    lines: Iterable[tuple],
    *,
    tax_rate,
    discount_percent=0,
    tendered: Optional[Decimal] = None,
) -> dict:
    """
    lines: iterable of (unit_price, qty).

    subtotal = sum(price * qty)
    discount_amount = subtotal * clamp(discount, 0, 100) / 100
    taxable = subtotal - discount_amount
    tax = taxable * tax_rate
    total = taxable + tax
    change = max(0, tendered - total)

    Every monetary step is rounded to cents before it feeds the next one.
    """
    subtotal = q2(sum((Decimal(str(p or 0)) * int(qty) for p, qty in lines), ZERO))
    discount_amount = q2(subtotal * clamp_discount(discount_percent) / HUNDRED)
    taxable = q2(subtotal - discount_amount)
    tax = q2(taxable * Decimal(str(tax_rate or 0)))
    total = q2(taxable + tax)
    out = {
        "subtotal": subtotal,
        "discount_amount": discount_amount,
        "taxable": taxable,
        "tax": tax,
        "total": total,
        "tendered": None,
        "change": ZERO.quantize(MONEY_Q),
    }
    if tendered is not None:
        t = q2(tendered)
        out["tendered"] = t
        out["change"] = max(ZERO, q2(t - total)).quantize(MONEY_Q)
    return out
