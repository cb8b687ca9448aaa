"""
FACTURADOR — Module 1: Totals & Tax Calculator
Pure functions. Same inputs always give the same Totals; inputs are never mutated.

Flow:
  1. subtotal      = Σ line.subtotal
  2. factor        = -pct/100 (discount) | +pct/100 (surcharge) | 0
  3. adjusted_net  = subtotal × (1 + factor)
  4. tax_by_rate   = Σ line.subtotal × rate/100 grouped by rate (unadjusted)
  5. tax_total     = Σ tax_by_rate × (1 + factor)
  6. grand_total   = adjusted_net + tax_total

The adjustment scales the tax with the same factor as the net, so a 10%
discount also lowers the VAT by 10%.
"""

from decimal import Decimal
from typing import Iterable

from facturador.schemas.models import Adjustment, AdjustmentPolarity, LineItem, Totals

HUNDRED = Decimal("100")
ZERO = Decimal("0")


def adjustment_factor(adjustment: Adjustment) -> Decimal:
    if adjustment.polarity == AdjustmentPolarity.DISCOUNT:
        return -adjustment.percentage / HUNDRED
    if adjustment.polarity == AdjustmentPolarity.SURCHARGE:
        return adjustment.percentage / HUNDRED
    return ZERO


def tax_by_rate(items: Iterable[LineItem]) -> dict[Decimal, Decimal]:
    """Unadjusted tax per rate, in first-seen rate order."""
    grouped: dict[Decimal, Decimal] = {}
    for item in items:
        amount = item.subtotal * item.tax_rate / HUNDRED
        grouped[item.tax_rate] = grouped.get(item.tax_rate, ZERO) + amount
    return grouped


def calculate_totals(
    items: Iterable[LineItem],
    adjustment: Adjustment,
    apply_tax: bool = True,
) -> Totals:
    items = list(items)
    factor = adjustment_factor(adjustment)

    subtotal = sum((item.subtotal for item in items), ZERO)
    adjusted_net = subtotal * (1 + factor)

    if not apply_tax:
        return Totals(
            subtotal=subtotal,
            adjusted_net=adjusted_net,
            tax_by_rate={},
            tax_total=ZERO,
            grand_total=adjusted_net,
        )

    by_rate = tax_by_rate(items)
    raw_tax = sum(by_rate.values(), ZERO)
    tax_total = raw_tax * (1 + factor)

    return Totals(
        subtotal=subtotal,
        adjusted_net=adjusted_net,
        tax_by_rate=by_rate,
        tax_total=tax_total,
        grand_total=adjusted_net + tax_total,
    )
