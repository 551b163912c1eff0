"""
Money-split calculator.

Turns a deal total and a split template into ordered milestone portions.
Percentages always sum to 100 (within 0.01) and amounts always sum to the
total exactly; any rounding remainder lands on the last milestone.
"""
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from escrow.exceptions import InvalidSplitError

MAX_MILESTONES = 4
DEFAULT_MILESTONE_COUNT = 4
PERCENT_TOLERANCE = Decimal('0.01')
HUNDRED = Decimal('100')

EQUAL_SPLIT = 'equal_split'
FRONT_LOADED = 'front_loaded'
BACK_LOADED = 'back_loaded'
CUSTOM = 'custom'

TEMPLATE_CHOICES = (
    (EQUAL_SPLIT, 'Equal Split'),
    (FRONT_LOADED, 'Front Loaded'),
    (BACK_LOADED, 'Back Loaded'),
    (CUSTOM, 'Custom'),
)

# Front-loaded weights per milestone count; back-loaded is the reverse.
FRONT_LOADED_WEIGHTS = {
    1: ('100',),
    2: ('70', '30'),
    3: ('50', '30', '20'),
    4: ('40', '30', '20', '10'),
}

ZERO_DECIMAL_CURRENCIES = {'JPY', 'KRW', 'VND', 'CLP', 'ISK', 'UGX'}


@dataclass(frozen=True)
class SplitPortion:
    order: int
    percentage: Decimal
    amount: Decimal

    def as_dict(self):
        return {'order': self.order, 'percentage': str(self.percentage), 'amount': str(self.amount)}


def minor_unit(currency):
    """Smallest representable amount for `currency` as a Decimal quantum."""
    if (currency or '').upper() in ZERO_DECIMAL_CURRENCIES:
        return Decimal('1')
    return Decimal('0.01')


def quantize_money(amount, currency='USD'):
    return Decimal(str(amount)).quantize(minor_unit(currency), rounding=ROUND_HALF_UP)


def _to_decimal(value, label):
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidSplitError(f"{label} must be a number (got {value!r}).")


def template_percentages(template, count=None, percentages=None):
    """Resolve the ordered percentage list for a template."""
    if template == CUSTOM:
        if not percentages:
            raise InvalidSplitError("A custom split requires at least one percentage.")
        return [_to_decimal(p, 'Percentage') for p in percentages]

    count = DEFAULT_MILESTONE_COUNT if count is None else count
    if not isinstance(count, int) or count < 1 or count > MAX_MILESTONES:
        raise InvalidSplitError(f"Milestone count must be between 1 and {MAX_MILESTONES}.")

    if template == EQUAL_SPLIT:
        share = (HUNDRED / count).quantize(PERCENT_TOLERANCE, rounding=ROUND_HALF_UP)
        shares = [share] * (count - 1)
        return shares + [HUNDRED - sum(shares, Decimal('0'))]
    if template == FRONT_LOADED:
        return [Decimal(w) for w in FRONT_LOADED_WEIGHTS[count]]
    if template == BACK_LOADED:
        return [Decimal(w) for w in reversed(FRONT_LOADED_WEIGHTS[count])]

    raise InvalidSplitError(f"Unknown split template '{template}'.")


def calculate_split(total, template, percentages=None, count=None, currency='USD'):
    """
    Split `total` into ordered milestone portions.

    Args:
        total: Deal total (positive, representable in the currency's minor unit)
        template: One of equal_split, front_loaded, back_loaded, custom
        percentages: Ordered percentages, required for custom
        count: Number of milestones for the named templates (default 4)
        currency: ISO currency code, decides the rounding unit

    Returns:
        list[SplitPortion] ordered by milestone order (1..N)

    Raises:
        InvalidSplitError
    """
    total = _to_decimal(total, 'Total amount')
    unit = minor_unit(currency)
    if total <= 0:
        raise InvalidSplitError("Total amount must be greater than zero.")
    if total != total.quantize(unit):
        raise InvalidSplitError(f"Total amount {total} is not representable in {currency}.")

    weights = template_percentages(template, count=count, percentages=percentages)
    if len(weights) > MAX_MILESTONES:
        raise InvalidSplitError(f"A deal can have at most {MAX_MILESTONES} milestones.")
    if any(w <= 0 or w > HUNDRED for w in weights):
        raise InvalidSplitError("Each milestone percentage must be greater than 0 and at most 100.")

    weight_sum = sum(weights, Decimal('0'))
    if abs(weight_sum - HUNDRED) > PERCENT_TOLERANCE:
        raise InvalidSplitError(f"Milestone percentages must sum to 100 (current: {weight_sum}).")

    portions = []
    allocated = Decimal('0')
    for index, weight in enumerate(weights, start=1):
        if index == len(weights):
            amount = total - allocated
        else:
            amount = (total * weight / HUNDRED).quantize(unit, rounding=ROUND_HALF_UP)
            allocated += amount
        if amount <= 0:
            raise InvalidSplitError("Total amount is too small to split across these milestones.")
        portions.append(SplitPortion(order=index, percentage=weight, amount=amount))

    return portions
