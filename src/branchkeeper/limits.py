"""Per-run counters for branches, commits and pull requests."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

from .observability import log_debug


class Limit(str, Enum):
    BRANCHES = "Branches"
    COMMITS = "Commits"
    PULL_REQUESTS = "PullRequests"


@dataclass
class _LimitValue:
    max: Optional[int]
    current: int = 0


class LimitTracker:
    """Tracks how close a run is to its configured caps.

    A limit that was never set, or set to ``None``/``0``, is unlimited.
    """

    def __init__(self) -> None:
        self._limits: Dict[Limit, _LimitValue] = {}
        self._lock = threading.Lock()

    def reset_all_limits(self) -> None:
        with self._lock:
            self._limits.clear()

    def set_max_limit(self, key: Limit, max_value: Optional[int]) -> None:
        """Set the cap for ``key``; counts taken so far are kept."""
        value = max_value if max_value and max_value > 0 else None
        with self._lock:
            limit = self._limits.setdefault(key, _LimitValue(max=None))
            limit.max = value
        log_debug("Limit set", key=key.value, max=value)

    def inc_limited_value(self, key: Limit, inc_by: int = 1) -> None:
        with self._lock:
            limit = self._limits.setdefault(key, _LimitValue(max=None))
            limit.current += inc_by

    def has_max_limit(self, key: Limit) -> bool:
        with self._lock:
            limit = self._limits.get(key)
            return limit is not None and limit.max is not None

    def is_limit_reached(self, key: Limit) -> bool:
        with self._lock:
            limit = self._limits.get(key)
            if limit is None or limit.max is None:
                return False
            return limit.current >= limit.max

    def current(self, key: Limit) -> int:
        with self._lock:
            limit = self._limits.get(key)
            return limit.current if limit else 0
