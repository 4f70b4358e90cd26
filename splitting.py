"""Equal-split calculator.

Turns an expense amount, its payer and the group's members into the debts
the non-paying members owe the payer. Arithmetic is done in whole cents so
the shares always add up to the original amount.
"""

from collections import namedtuple
from decimal import Decimal, InvalidOperation

from errors import InvalidInput

CENT = Decimal('0.01')
MAX_AMOUNT = Decimal('1e10')

Share = namedtuple('Share', ['owed_by', 'owed_to', 'amount'])


def parse_amount(value):
    """Convert user input to a non-negative ``Decimal`` with two places.

    Floats are refused outright; money arrives as strings or integers.
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise InvalidInput('Amount must be given as a string or integer')
    if isinstance(value, str):
        value = value.strip()
    try:
        amount = Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidInput(f'Malformed amount: {value!r}')
    if not amount.is_finite():
        raise InvalidInput(f'Malformed amount: {value!r}')
    if amount < 0:
        raise InvalidInput('Amount must not be negative')
    if amount >= MAX_AMOUNT:
        raise InvalidInput('Amount is too large')
    try:
        quantized = amount.quantize(CENT)
    except InvalidOperation:
        raise InvalidInput(f'Malformed amount: {value!r}')
    if amount != quantized:
        raise InvalidInput('Amount cannot have fractions of a cent')
    return quantized


def allocate_cents(total_cents, members, first=None):
    """Divide ``total_cents`` evenly over ``members``.

    Every share has the same fractional part, so the leftover cents go one
    each to ``first`` and then to the remaining members in ascending order.
    Returns a dict of member -> cents.
    """
    ordered = sorted(members)
    if first is not None:
        ordered.remove(first)
        ordered.insert(0, first)
    base, remainder = divmod(total_cents, len(ordered))
    return {member: base + (1 if i < remainder else 0) for i, member in enumerate(ordered)}


def split_expense(amount, payer, members):
    """Return the list of ``Share`` debts owed to ``payer``.

    ``members`` includes the payer. The payer's own share is never
    materialised, so a group of one produces no debts.
    """
    members = set(members)
    if not members:
        raise InvalidInput('Cannot split an expense across an empty group')
    if payer not in members:
        raise InvalidInput('Payer must be a member of the group')
    amount = parse_amount(amount)

    cents = int(amount * 100)
    allocation = allocate_cents(cents, members, first=payer)

    return [
        Share(owed_by=member, owed_to=payer, amount=(Decimal(share) * CENT).quantize(CENT))
        for member, share in allocation.items()
        if member != payer
    ]
