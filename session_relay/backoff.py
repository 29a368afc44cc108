"""Retry backoff policies."""

import random
from typing import Any

MAX_BACKOFF_SECONDS = 3600


def calculate_backoff_with_jitter(backoff_policy: dict[str, Any], attempt: int) -> int:
    """
    Calculate backoff delay with jitter based on policy and attempt number.

    Args:
        backoff_policy: Backoff policy configuration
        attempt: Current attempt number (1-indexed)

    Returns:
        Backoff delay in seconds with jitter applied
    """
    base_delay = calculate_backoff(backoff_policy, attempt)

    # +/-20% jitter so retries from one outage don't land together
    jitter_factor = 1.0 + random.uniform(-0.2, 0.2)
    jittered_delay = int(base_delay * jitter_factor)

    return max(1, jittered_delay)


def calculate_backoff(backoff_policy: dict[str, Any], attempt: int) -> int:
    """
    Calculate backoff delay based on policy and attempt number.

    Args:
        backoff_policy: Backoff policy configuration
        attempt: Current attempt number (1-indexed)

    Returns:
        Backoff delay in seconds, capped at one hour
    """
    policy_type = backoff_policy.get("type", "exponential")
    base_seconds = backoff_policy.get("base_seconds", 10)

    if policy_type == "linear":
        delay = base_seconds * attempt
    elif policy_type == "constant":
        return base_seconds
    else:
        delay = base_seconds * (2 ** (attempt - 1))
    return min(delay, MAX_BACKOFF_SECONDS)
