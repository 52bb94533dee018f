"""Integer micro-unit arithmetic.

All money crosses module boundaries as int micro-units:
  - USD-micros:    1 USD    = 1_000_000
  - microcredits:  1 credit = 1_000_000
No float, no Decimal in ledger math.
"""

MICRO = 1_000_000


def ceil_div(a: int, b: int) -> int:
    """Integer ceiling division for non-negative a and positive b."""
    if b <= 0:
        raise ValueError(f"Divisor must be positive, got {b}")
    if a < 0:
        raise ValueError(f"Dividend must be non-negative, got {a}")
    return (a + b - 1) // b


def usd_micros_to_microcredits(usd_micros: int, factor_micros: int) -> int:
    """Convert a USD-micro cost to microcredits, rounding up.

    factor_micros is the USD-micro price of one whole credit
    (700_000 = $0.70 per credit):
        credits_micro = ceil(usd_micros * 1e6 / factor_micros)
    """
    return ceil_div(usd_micros * MICRO, factor_micros)


def usd_to_factor_micros(usd_per_credit: float) -> int:
    """0.70 -> 700000. Used only for the configured fallback factor."""
    return int(round(usd_per_credit * MICRO))


def token_amount_to_micros(amount: int, decimals: int) -> int:
    """Normalise an on-chain token base-unit amount to micro-units (floor)."""
    if decimals == 6:
        return amount
    if decimals > 6:
        return amount // 10 ** (decimals - 6)
    return amount * 10 ** (6 - decimals)


def micros_to_display(micros: int, places: int = 6) -> str:
    """1_500_000 -> '1.500000'; -42 -> '-0.000042'."""
    sign = "-" if micros < 0 else ""
    whole, frac = divmod(abs(micros), MICRO)
    frac_str = f"{frac:06d}"[:places]
    if places == 0:
        return f"{sign}{whole:,}"
    return f"{sign}{whole:,}.{frac_str}"


def usd_micros_to_display(usd_micros: int) -> str:
    """40_000 -> '$0.04'; sub-cent amounts -> '< $0.01'."""
    if 0 < usd_micros < 10_000:
        return "< $0.01"
    cents = usd_micros // 10_000
    return f"${cents // 100:,}.{cents % 100:02d}"
