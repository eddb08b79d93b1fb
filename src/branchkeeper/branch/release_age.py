from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from typing import Optional

from ..config_schema import BranchUpgradeConfig
from ..observability import log_debug, log_warning

_UNITS = {
    "s": timedelta(seconds=1),
    "sec": timedelta(seconds=1),
    "second": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "min": timedelta(minutes=1),
    "minute": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "hour": timedelta(hours=1),
    "d": timedelta(days=1),
    "day": timedelta(days=1),
    "w": timedelta(weeks=1),
    "week": timedelta(weeks=1),
    "month": timedelta(days=30),
    "y": timedelta(days=365),
    "year": timedelta(days=365),
}

_DURATION = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([a-z]+?)s?\s*$", re.IGNORECASE)


def parse_duration(value: Optional[str]) -> Optional[timedelta]:
    """Parse ``"3 days"``, ``"1 week"``, ``"12h"`` and similar.

    Returns None for an empty or unrecognised value.
    """
    if not value:
        return None
    match = _DURATION.match(value)
    if match is None:
        return None
    amount, unit = match.groups()
    delta = _UNITS.get(unit.lower())
    if delta is None:
        return None
    return delta * float(amount)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def is_release_age_satisfied(upgrade: BranchUpgradeConfig, now: Optional[datetime] = None) -> bool:
    """True unless the upgrade's release is younger than its minimum release age."""
    if not upgrade.minimum_release_age or upgrade.release_timestamp is None:
        return True
    minimum = parse_duration(upgrade.minimum_release_age)
    if minimum is None:
        log_warning(
            "Ignoring unparseable minimum release age",
            dep_name=upgrade.dep_name,
            minimum_release_age=upgrade.minimum_release_age,
        )
        return True
    now = _as_utc(now or datetime.now(timezone.utc))
    elapsed = now - _as_utc(upgrade.release_timestamp)
    if elapsed < minimum:
        log_debug(
            "Update has not passed minimum release age",
            dep_name=upgrade.dep_name,
            elapsed_seconds=int(elapsed.total_seconds()),
            minimum_release_age=upgrade.minimum_release_age,
        )
        return False
    return True
