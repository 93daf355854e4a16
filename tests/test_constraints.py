"""Tests for request validation and the retry policy.

Covers every rejection branch in validate_request() and validate_retry_policy().
"""

from __future__ import annotations

import random

import pytest

from plazas.domain.constraints import (
    InvalidRequestError,
    RetryPolicy,
    normalize_preferences,
    validate_request,
    validate_retry_policy,
)
from plazas.domain.models import AllocationRequest


def valid_policy(**overrides) -> RetryPolicy:
    """Return a valid baseline RetryPolicy, optionally overriding fields."""
    defaults = {
        "max_attempts": 3,
        "backoff_base_seconds": 0.1,
        "backoff_cap_seconds": 0.7,
    }
    defaults.update(overrides)
    return RetryPolicy(**defaults)


def request_with(**overrides) -> AllocationRequest:
    defaults = {
        "priority_key": 1,
        "preferences": ("C001", "C002"),
        "submitted_at": "2026-03-01T09:00:00+00:00",
    }
    defaults.update(overrides)
    return AllocationRequest(**defaults)


# --- RetryPolicy ---

def test_valid_policy_passes() -> None:
    validate_retry_policy(valid_policy())


def test_max_attempts_zero_raises() -> None:
    with pytest.raises(ValueError):
        validate_retry_policy(valid_policy(max_attempts=0))


def test_negative_backoff_base_raises() -> None:
    with pytest.raises(ValueError):
        validate_retry_policy(valid_policy(backoff_base_seconds=-0.1))


def test_cap_below_base_raises() -> None:
    with pytest.raises(ValueError):
        validate_retry_policy(valid_policy(backoff_base_seconds=0.5, backoff_cap_seconds=0.2))


def test_backoff_grows_then_caps() -> None:
    policy = valid_policy()
    rng = random.Random(3)
    for attempt, ceiling in [(1, 0.1), (2, 0.2), (3, 0.4), (4, 0.7), (9, 0.7)]:
        for _ in range(20):
            assert 0.0 <= policy.next_delay(attempt, rng) <= ceiling


# --- validate_request ---

def test_valid_request_returns_preferences() -> None:
    assert validate_request(request_with()) == ("C001", "C002")


def test_blank_and_repeated_preferences_are_dropped() -> None:
    assert normalize_preferences([" C002 ", "", "C001", "C002"]) == ("C002", "C001")


def test_empty_preferences_raise() -> None:
    with pytest.raises(InvalidRequestError):
        validate_request(request_with(preferences=()))


def test_only_blank_preferences_raise() -> None:
    with pytest.raises(InvalidRequestError):
        validate_request(request_with(preferences=("  ",)))


def test_non_string_facility_id_raises() -> None:
    with pytest.raises(InvalidRequestError):
        validate_request(request_with(preferences=("C001", 7)))


def test_string_instead_of_list_raises() -> None:
    with pytest.raises(InvalidRequestError):
        validate_request(request_with(preferences="C001"))


def test_non_integer_priority_key_raises() -> None:
    with pytest.raises(InvalidRequestError):
        validate_request(request_with(priority_key="1"))
