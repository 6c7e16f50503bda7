"""
Money and discount calculator
Project: Clinic Ledger

Pure functions, no database access. Every amount is a Decimal rounded to
two places with ROUND_HALF_UP.

Discount stacking: item discounts are applied to each line first, then the
invoice discount is applied to the sum of line totals.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, NamedTuple, Optional

from clinic_ledger.core.exceptions import BusinessValidationError

TWO_PLACES = Decimal("0.01")
ZERO = Decimal("0.00")
HUNDRED = Decimal("100")

# Rounding tolerance for every balance comparison
TOLERANCE = Decimal("0.01")

PERCENTAGE = "percentage"
FIXED = "fixed"


class LineAmounts(NamedTuple):
    subtotal: Decimal
    discount_amount: Decimal
    total: Decimal


class InvoiceTotals(NamedTuple):
    subtotal: Decimal
    discount_amount: Decimal
    total_amount: Decimal


def to_money(value) -> Decimal:
    """Round any numeric value to two decimal places."""
    if value is None:
        return ZERO
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def calculate_discount(base: Decimal, discount: Optional[Decimal], discount_type: str) -> Decimal:
    """
    Discount amount for `base`.

    Percentage discounts are `base * discount / 100`. Fixed discounts are
    clamped to `base` so a total can never go negative.
    """
    base = to_money(base)
    discount = to_money(discount)

    if discount < 0:
        raise BusinessValidationError("Discount cannot be negative")
    if discount == 0 or base <= 0:
        return ZERO

    if discount_type == PERCENTAGE:
        if discount > HUNDRED:
            raise BusinessValidationError("Percentage discount cannot exceed 100")
        amount = to_money(base * discount / HUNDRED)
    elif discount_type == FIXED:
        amount = discount
    else:
        raise BusinessValidationError(f"Unknown discount type: {discount_type}")

    return min(amount, base)


def calculate_line(
    quantity,
    unit_price: Decimal,
    discount: Optional[Decimal],
    discount_type: str,
    product_name: str,
) -> LineAmounts:
    """
    Amounts of one invoice line.

    Raises:
        BusinessValidationError: quantity is not a positive integer or the
            price is negative
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise BusinessValidationError(f"Invalid quantity for {product_name}")

    unit_price = to_money(unit_price)
    if unit_price < 0:
        raise BusinessValidationError(f"Invalid unit price for {product_name}")

    subtotal = to_money(unit_price * quantity)
    discount_amount = calculate_discount(subtotal, discount, discount_type)
    return LineAmounts(subtotal, discount_amount, subtotal - discount_amount)


def calculate_invoice_totals(
    line_totals: Iterable[Decimal],
    discount: Optional[Decimal],
    discount_type: str,
) -> InvoiceTotals:
    """Invoice subtotal, invoice-level discount and final total."""
    subtotal = to_money(sum((to_money(t) for t in line_totals), ZERO))
    discount_amount = calculate_discount(subtotal, discount, discount_type)
    total_amount = max(ZERO, subtotal - discount_amount)
    return InvoiceTotals(subtotal, discount_amount, total_amount)


# ------------------------------------------------------------
# Balances and statuses
# ------------------------------------------------------------

def refundable_balance(total_amount: Decimal, refunded_amount: Decimal) -> Decimal:
    """What is still owed or refundable once credit notes issued from the invoice are deducted."""
    return max(ZERO, to_money(total_amount) - to_money(refunded_amount))


def outstanding_balance(
    total_amount: Decimal,
    paid_amount: Decimal,
    credit_applied_amount: Decimal,
    refunded_amount: Decimal = ZERO,
) -> Decimal:
    """Amount the patient still owes on the invoice."""
    effective_total = refundable_balance(total_amount, refunded_amount)
    return max(ZERO, effective_total - to_money(paid_amount) - to_money(credit_applied_amount))


def invoice_status(
    total_amount: Decimal,
    paid_amount: Decimal,
    credit_applied_amount: Decimal,
    refunded_amount: Decimal = ZERO,
) -> str:
    """
    Status of an invoice.

    Refunds lower the amount owed rather than counting as payment:

        effective_total = max(0, total - refunded)
        paid_equivalent = paid + credit_applied
        paid_equivalent <= 0                       -> unpaid
        paid_equivalent + 0.01 >= effective_total  -> paid
        otherwise                                  -> partial
    """
    effective_total = refundable_balance(total_amount, refunded_amount)
    paid_equivalent = to_money(paid_amount) + to_money(credit_applied_amount)

    if paid_equivalent <= 0:
        return "unpaid"
    if paid_equivalent + TOLERANCE >= effective_total:
        return "paid"
    return "partial"


def credit_note_status(remaining_amount: Decimal, total_amount: Decimal) -> str:
    """closed when nothing is left, open when untouched, partial in between."""
    remaining_amount = to_money(remaining_amount)
    if remaining_amount <= 0:
        return "closed"
    if remaining_amount < to_money(total_amount):
        return "partial"
    return "open"
