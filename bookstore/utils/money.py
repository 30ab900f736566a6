# bookstore/utils/money.py

from decimal import Decimal, ROUND_HALF_UP

Money = Decimal

ZERO = Decimal("0.00")
HUNDRED = Decimal("100")


def D(x) -> Money:
    return x if isinstance(x, Decimal) else Decimal(str(x or "0"))


def round_money(x: Money) -> Money:
    # ROUND_HALF_UP on Decimal rounds halves away from zero
    return D(x).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)



def clamp_percent(p) -> Decimal:
    p = D(p)
    if p < 0:
        return Decimal("0")
    if p > HUNDRED:
        return HUNDRED
    return p


def allocate(total: Money, weights) -> list[Money]:
    """
    Split ``total`` over ``weights`` proportionally, rounded to cents.
    The last non-zero weight absorbs the rounding remainder so the parts
    always add back up to ``total``.
    """
    weights = [D(w) for w in weights]
    total = round_money(total)
    parts = [ZERO for _ in weights]
    base = sum(weights, Decimal("0"))
    if not weights or base <= 0 or total == 0:
        return parts

    last = max(i for i, w in enumerate(weights) if w > 0)
    running = ZERO
    for i, w in enumerate(weights):
        if i == last:
            parts[i] = round_money(total - running)
            break
        share = round_money(total * w / base)
        parts[i] = share
        running += share
    return parts
