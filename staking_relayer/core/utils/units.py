from __future__ import annotations


def parse_base_units(value: str | int) -> int:
    """Parse an integer amount expressed in a token's smallest unit."""
    if isinstance(value, bool):
        raise ValueError(f"Invalid base-unit amount: {value!r}")
    if isinstance(value, int):
        raw = value
    else:
        text = str(value).strip()
        if not text.isdigit():
            raise ValueError(f"Invalid base-unit amount: {value!r}")
        raw = int(text)
    if raw < 0:
        raise ValueError("Amount must be non-negative")
    return raw


def format_units(raw: int, decimals: int) -> str:
    """Render a base-unit integer as a decimal string without float rounding.

    ``format_units(1500000000000000000, 18) == "1.5"``
    """
    raw = int(raw)
    decimals = int(decimals)
    if decimals < 0:
        raise ValueError("decimals must be non-negative")
    sign = "-" if raw < 0 else ""
    whole, frac = divmod(abs(raw), 10**decimals)
    if decimals == 0:
        return f"{sign}{whole}"
    frac_str = str(frac).rjust(decimals, "0").rstrip("0")
    if not frac_str:
        return f"{sign}{whole}"
    return f"{sign}{whole}.{frac_str}"


def format_tvl(tvl_usd: float) -> str:
    value = float(tvl_usd)
    if value >= 1e9:
        return f"${value / 1e9:.2f}B"
    if value >= 1e6:
        return f"${value / 1e6:.2f}M"
    return f"${value:.0f}"
