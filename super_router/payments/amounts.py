"""Token amount conversion between human units and raw on-chain units"""

from decimal import Decimal, InvalidOperation, localcontext


def to_raw_units(amount: str, decimals: int) -> int:
    """
    Convert a human-readable token amount ("1000", "1.5") to raw units.

    Raises ValueError for negative values, non-numeric input, or more
    fractional digits than the token supports.
    """
    try:
        value = Decimal(amount.strip())
    except (InvalidOperation, AttributeError) as e:
        raise ValueError(f"Invalid token amount: {amount!r}") from e

    if not value.is_finite() or value < 0:
        raise ValueError(f"Invalid token amount: {amount!r}")

    with localcontext() as ctx:
        ctx.prec = 80
        raw = value.scaleb(decimals)
    if raw != raw.to_integral_value():
        raise ValueError(
            f"Too many decimal places: {amount} has more than {decimals} fractional digits"
        )
    return int(raw)


def to_human_units(raw: int, decimals: int) -> str:
    """Format raw units as a plain decimal string without trailing zeros"""
    with localcontext() as ctx:
        ctx.prec = 80
        value = Decimal(raw).scaleb(-decimals)
    text = format(value, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text
