"""Money and plan codec - minor-unit amounts, plan keys, identifiers"""
import re
import secrets
import string
import time
from typing import Dict, List, Mapping, Optional

from storefront.core.config import settings

PLAN_KEYS = ("one_time", "monthly", "annual", "lifetime")

PLAN_LABELS = {
    "one_time": "One-time",
    "monthly": "Monthly",
    "annual": "Annually",
    "lifetime": "Lifetime",
}

# Stripe recurring descriptors for subscription plans
PLAN_INTERVAL = {
    "monthly": {"interval": "month", "interval_count": 1},
    "annual": {"interval": "year", "interval_count": 1},
}

SUBSCRIPTION_PLANS = frozenset(PLAN_INTERVAL)

# Values accepted by /setprice to disable a plan
DISABLE_WORDS = frozenset({"none", "disable", "off"})

_AMOUNT_RE = re.compile(r"^[0-9]+(\.[0-9]{1,2})?$")
_BASE36 = string.digits + string.ascii_uppercase


def parse_amount(text: Optional[str]) -> Optional[int]:
    """Convert a user-entered decimal string ("9.99", "5") to minor units.

    Only unsigned decimals with at most two fractional digits are accepted.
    Zero and every other shape return None; nothing is coerced.
    """
    if not isinstance(text, str):
        return None
    trimmed = text.strip()
    if not _AMOUNT_RE.match(trimmed):
        return None
    whole, _, frac = trimmed.partition(".")
    minor = int(whole) * 100 + int(frac.ljust(2, "0"))
    if minor <= 0:
        return None
    return minor


def format_amount(minor: int) -> str:
    """Render minor units for display, e.g. 999 -> '£9.99'"""
    major, cents = divmod(int(minor), 100)
    return f"{settings.CURRENCY_SYMBOL}{major}.{cents:02d}"


def plan_amount(prices: Optional[Mapping], plan_key: str) -> Optional[int]:
    """Amount for a plan, or None when the plan is not enabled"""
    if not prices:
        return None
    value = prices.get(plan_key)
    # bool is an int subclass; never treat True as a price
    if isinstance(value, int) and not isinstance(value, bool) and value > 0:
        return value
    return None


def list_enabled_plans(prices: Optional[Mapping]) -> List[str]:
    """Enabled plan keys in canonical order"""
    return [key for key in PLAN_KEYS if plan_amount(prices, key) is not None]


def format_plans(prices: Optional[Mapping]) -> str:
    plans = list_enabled_plans(prices)
    if not plans:
        return "None"
    return ", ".join(f"`{PLAN_LABELS[k]} {format_amount(prices[k])}`" for k in plans)


def parse_price_map(raw: Mapping[str, Optional[str]]) -> Dict[str, int]:
    """Parse optional per-plan amount strings into a price map.

    Raises ValueError naming the first plan whose amount is malformed.
    """
    prices = {}
    for key in PLAN_KEYS:
        text = raw.get(key)
        if text is None or str(text).strip() == "":
            continue
        minor = parse_amount(text)
        if minor is None:
            raise ValueError(f'Invalid amount for {key}: "{text}"')
        prices[key] = minor
    return prices


def is_subscription_plan(plan_key: Optional[str]) -> bool:
    return plan_key in SUBSCRIPTION_PLANS


def _base36(value: int) -> str:
    out = ""
    while value:
        value, rem = divmod(value, 36)
        out = _BASE36[rem] + out
    return out or "0"


def _random_suffix(length: int) -> str:
    return "".join(secrets.choice(_BASE36) for _ in range(length))


def make_purchase_id() -> str:
    """Human-readable purchase ID, e.g. VT-LZ3K9Q2A-7HX2M"""
    return f"VT-{_base36(int(time.time() * 1000))}-{_random_suffix(5)}"


def make_refund_request_id() -> str:
    return f"RR-{_base36(int(time.time() * 1000))}-{_random_suffix(4)}"
