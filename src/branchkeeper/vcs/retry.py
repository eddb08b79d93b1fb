from __future__ import annotations

import time
from typing import Callable, Optional, TypeVar

from ..config_schema import RetrySettings
from ..errors import ExternalHostError, check_for_platform_failure
from ..observability import log_debug

T = TypeVar("T")


def retry_delay(settings: RetrySettings, round_number: int) -> float:
    """Seconds to wait before retry ``round_number`` (1-based).

    Grows linearly with the round and is capped; the transport already has
    its own timeouts, so the backoff stays small.
    """
    return min(settings.delay_seconds * round_number, settings.max_delay_seconds)


def git_retry(operation: Callable[[], T], settings: Optional[RetrySettings] = None) -> T:
    """Run a git operation, retrying only external-host failures.

    Non-host errors propagate immediately and unchanged. When every round
    fails with a host error, the last one is raised as ExternalHostError.
    """
    settings = settings or RetrySettings()
    last_error: Optional[ExternalHostError] = None

    for round_number in range(settings.retry_count + 1):
        if round_number > 0:
            delay = retry_delay(settings, round_number)
            log_debug(
                "GIT_RETRY: waiting before next round",
                round=round_number,
                delay_seconds=delay,
            )
            if delay > 0:
                time.sleep(delay)
        try:
            result = operation()
            if round_number > 0:
                log_debug("GIT_RETRY: succeeded", round=round_number)
            return result
        except Exception as err:
            classified = check_for_platform_failure(err)
            if not isinstance(classified, ExternalHostError):
                raise
            last_error = classified
            log_debug(
                "GIT_RETRY: external host error",
                round=round_number,
                error=str(err).strip().splitlines()[0] if str(err).strip() else type(err).__name__,
            )

    if last_error is None:
        raise ValueError(f"retry_count must be non-negative, got {settings.retry_count}")
    raise last_error from last_error.err
