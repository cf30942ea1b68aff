"""Turn --created-on / --until calendar days into a Stripe ``created`` filter.

Day boundaries are UTC midnights and the upper bound is exclusive, so
``--created-on=2024-01-10`` selects everything created during that UTC day.
"""
from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Dict, Optional


MIN_YEAR = 1900
MAX_YEAR = 2100


def parse_day(value: str, flag: str) -> date:
    """Parse ``YYYY-MM-DD`` strictly, raising ValueError naming ``flag``."""
    parts = value.split("-")
    try:
        numbers = [int(part) for part in parts]
    except ValueError:
        numbers = []
    if len(parts) != 3 or len(numbers) != 3:
        raise ValueError(f"Invalid {flag}. Expected format: YYYY-MM-DD")

    year, month, day = numbers
    if not MIN_YEAR <= year <= MAX_YEAR:
        raise ValueError(f"Invalid {flag}. Year must be between {MIN_YEAR} and {MAX_YEAR}")
    if not 1 <= month <= 12:
        raise ValueError(f"Invalid {flag}. Month must be between 1 and 12")
    if not 1 <= day <= 31:
        raise ValueError(f"Invalid {flag}. Day must be between 1 and 31")
    try:
        return date(year, month, day)
    except ValueError:
        raise ValueError(f"Invalid {flag}. Not a calendar date (e.g. February 30)") from None


def midnight_utc(day: date) -> int:
    """Epoch seconds of 00:00 UTC on ``day``."""
    return int(datetime(day.year, day.month, day.day, tzinfo=timezone.utc).timestamp())


def day_bounds(day: date) -> tuple[int, int]:
    """Half-open ``[start, end)`` covering the whole UTC day."""
    return midnight_utc(day), midnight_utc(day + timedelta(days=1))


def build_created_filter(
    created_on: Optional[str], until: Optional[str]
) -> Optional[Dict[str, int]]:
    """Build ``{"gte": ..., "lt": ...}`` from the CLI values, or None when neither is set."""
    if not created_on and not until:
        return None

    created: Dict[str, int] = {}
    if created_on:
        created["gte"], created["lt"] = day_bounds(parse_day(created_on, "--created-on"))
    if until:
        created["lt"] = day_bounds(parse_day(until, "--until"))[1]

    if "gte" in created and created["gte"] >= created["lt"]:
        raise ValueError("Inconsistent dates: --created-on must be on or before --until")
    return created
