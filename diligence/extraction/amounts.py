"""
Monetary amount parsing.

Understands the Indian numbering units used in research text:

    "₹50 crore"      -> 500,000,000 INR
    "Rs. 2.5 lakh"   -> 250,000 INR
    "$3 million"     -> 3,000,000 USD (249,000,000 INR at 83)
    "INR 1,20,000"   -> 120,000 INR

A number counts as money only when it carries a currency marker or a
magnitude unit, so years and case numbers are never read as amounts.
"""

import re
from dataclasses import dataclass
from typing import Any, List, Optional

from config.settings import settings

CRORE = 10_000_000
LAKH = 100_000

_UNIT_MULTIPLIERS = {
    "crore": CRORE,
    "cr": CRORE,
    "lakh": LAKH,
    "lac": LAKH,
    "million": 1_000_000,
    "mn": 1_000_000,
    "billion": 1_000_000_000,
    "bn": 1_000_000_000,
    "thousand": 1_000,
}

_CURRENCY_CODES = {
    "₹": "INR",
    "rs": "INR",
    "inr": "INR",
    "rupees": "INR",
    "$": "USD",
    "us$": "USD",
    "usd": "USD",
    "dollars": "USD",
    "€": "EUR",
    "eur": "EUR",
    "£": "GBP",
    "gbp": "GBP",
}

# Fixed reference rates; USD follows configuration
_FIXED_RATES_INR = {"INR": 1.0, "EUR": 90.0, "GBP": 105.0}

AMOUNT_PATTERN = re.compile(
    r"(?P<cur>₹|us\$|\$|€|£|(?<![a-z])(?:rs\.?|inr|usd|eur|gbp)(?![a-z]))?\s*"
    r"(?P<num>\d{1,3}(?:,\d{2,3})+(?:\.\d+)?|\d+(?:\.\d+)?)"
    r"(?:\s*(?P<unit>crores?|crs?|lakhs?|lacs?|millions?|mn|billions?|bn|thousand)(?![a-z])\.?)?"
    r"(?:\s+(?P<suffix>rupees|dollars|inr|usd)(?![a-z]))?",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class ParsedAmount:
    text: str
    value: float
    currency: str
    inr: float


def rate_to_inr(currency: str) -> float:
    if currency == "USD":
        return settings.USD_INR_RATE
    return _FIXED_RATES_INR.get(currency, 1.0)


def _unit_multiplier(unit: Optional[str]) -> int:
    if not unit:
        return 1
    unit = unit.lower().rstrip(".")
    for key, multiplier in _UNIT_MULTIPLIERS.items():
        if unit.startswith(key):
            return multiplier
    return 1


def _currency_code(marker: Optional[str]) -> Optional[str]:
    if not marker:
        return None
    return _CURRENCY_CODES.get(marker.lower().rstrip(".").strip())


def _from_match(match: "re.Match") -> Optional[ParsedAmount]:
    try:
        number = float(match.group("num").replace(",", ""))
    except ValueError:
        return None
    unit = match.group("unit")
    currency = _currency_code(match.group("cur")) or _currency_code(match.group("suffix"))
    if currency is None:
        currency = "INR"
    value = number * _unit_multiplier(unit)
    return ParsedAmount(
        text=match.group(0).strip(),
        value=value,
        currency=currency,
        inr=value * rate_to_inr(currency),
    )


def _is_money(match: "re.Match") -> bool:
    return bool(match.group("cur") or match.group("unit") or match.group("suffix"))


def find_amounts(text: str) -> List[ParsedAmount]:
    """Every monetary amount in ``text``, in order of appearance."""
    if not text:
        return []
    amounts = []
    for match in AMOUNT_PATTERN.finditer(text):
        if not _is_money(match):
            continue
        parsed = _from_match(match)
        if parsed is not None:
            amounts.append(parsed)
    return amounts


def parse_amount(value: Any, allow_bare: bool = True) -> Optional[ParsedAmount]:
    """
    Parse an amount field.

    Numbers are taken as rupees. Strings are scanned for the first monetary
    amount; with ``allow_bare`` a plain number is accepted when no currency
    or unit is present.

    Returns:
        ParsedAmount, or None if nothing parseable was found
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
        return ParsedAmount(text=str(value), value=number, currency="INR", inr=number)
    if not isinstance(value, str):
        return None

    money = find_amounts(value)
    if money:
        return money[0]

    if allow_bare:
        for match in AMOUNT_PATTERN.finditer(value):
            parsed = _from_match(match)
            if parsed is not None:
                return parsed
    return None


__all__ = ["CRORE", "LAKH", "ParsedAmount", "find_amounts", "parse_amount", "rate_to_inr"]
