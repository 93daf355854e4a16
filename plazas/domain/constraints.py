"""Domain-level validation rules for requests and the retry policy."""

from __future__ import annotations

import random
from dataclasses import dataclass

from plazas.domain.models import AllocationRequest


class InvalidRequestError(ValueError):
    """Raised when a request cannot be matched against any facility."""


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    backoff_base_seconds: float
    backoff_cap_seconds: float

    def next_delay(self, attempt: int, rng: random.Random) -> float:
        """Full-jitter exponential backoff for the given 1-based attempt."""
        exponent = max(attempt, 1) - 1
        ceiling = min(self.backoff_cap_seconds, self.backoff_base_seconds * (2**exponent))
        return rng.uniform(0.0, ceiling)


def validate_retry_policy(policy: RetryPolicy) -> None:
    if policy.max_attempts <= 0:
        raise ValueError("max_attempts must be > 0")
    if policy.backoff_base_seconds < 0.0:
        raise ValueError("backoff_base_seconds must be >= 0")
    if policy.backoff_cap_seconds < policy.backoff_base_seconds:
        raise ValueError("backoff_cap_seconds must be >= backoff_base_seconds")


def normalize_preferences(preferences: object) -> tuple[str, ...]:
    """Strip blanks and repeats while keeping the most-preferred-first order."""
    if isinstance(preferences, str) or not isinstance(preferences, (list, tuple)):
        raise InvalidRequestError("preferences must be a list of facility ids")
    normalized: list[str] = []
    for item in preferences:
        if not isinstance(item, str):
            raise InvalidRequestError(f"facility id must be a string, got {item!r}")
        facility_id = item.strip()
        if facility_id and facility_id not in normalized:
            normalized.append(facility_id)
    return tuple(normalized)


def validate_request(request: AllocationRequest) -> tuple[str, ...]:
    """Return the usable preference list or raise `InvalidRequestError`."""
    if isinstance(request.priority_key, bool) or not isinstance(request.priority_key, int):
        raise InvalidRequestError(f"priority key must be an integer, got {request.priority_key!r}")
    preferences = normalize_preferences(request.preferences)
    if not preferences:
        raise InvalidRequestError("request has no valid facility preferences")
    return preferences
