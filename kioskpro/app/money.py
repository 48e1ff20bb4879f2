from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, List

CENT = Decimal("0.01")
TENTH = Decimal("0.1")


def to_decimal(value) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def money(value) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def pct(part, whole) -> Decimal:
    whole = to_decimal(whole)
    if whole == 0:
        return Decimal("0.0")
    return (to_decimal(part) * 100 / whole).quantize(TENTH, rounding=ROUND_HALF_UP)


def pct_change(current, previous) -> Decimal:
    """Change from `previous` to `current` in percent; a jump from zero counts as 100."""
    current = to_decimal(current)
    previous = to_decimal(previous)
    if previous == 0:
        return Decimal("100.0") if current > 0 else Decimal("0.0")
    return ((current - previous) * 100 / previous).quantize(TENTH, rounding=ROUND_HALF_UP)


def share_percentages(values: Iterable) -> List[Decimal]:
    """
    Split 100% across `values` with one decimal place, largest remainder first,
    so the shares always add up to exactly 100.0 (or all zero when nothing sold).
    """
    vals = [to_decimal(v) for v in values]
    total = sum(vals, Decimal("0"))
    if total <= 0:
        return [Decimal("0.0") for _ in vals]
    # Work in tenths of a percent: 1000 units in total.
    raw = [v * 1000 / total for v in vals]
    floors = [int(r) for r in raw]
    leftover = 1000 - sum(floors)
    order = sorted(range(len(vals)), key=lambda i: (raw[i] - floors[i], vals[i]), reverse=True)
    for i in order[:leftover]:
        floors[i] += 1
    return [(Decimal(f) / 10).quantize(TENTH) for f in floors]
