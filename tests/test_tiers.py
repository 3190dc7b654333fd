"""Tests for the tier policy table"""

import pytest

from conversion_service.tiers import UserTier, policy_for

ORDER = ["enterprise", "premium", "basic", "free"]


def test_priority_and_attempts_are_monotonic():
    policies = [policy_for(t) for t in ORDER]

    priorities = [p.priority for p in policies]
    attempts = [p.attempts for p in policies]
    assert priorities == sorted(priorities) and len(set(priorities)) == 4
    assert attempts == sorted(attempts, reverse=True) and len(set(attempts)) == 4


def test_exact_table():
    assert [(policy_for(t).priority, policy_for(t).attempts, policy_for(t).queue_discount) for t in ORDER] == [
        (1, 5, 0.2),
        (2, 4, 0.5),
        (3, 3, 0.8),
        (4, 2, 1.0),
    ]


@pytest.mark.parametrize("tier", ["gold", "", None, "FREE ", 42])
def test_unknown_tiers_get_free_policy(tier):
    assert policy_for(tier) == policy_for(UserTier.FREE)


def test_parse_is_case_insensitive():
    assert UserTier.parse("Premium") is UserTier.PREMIUM
    assert UserTier.parse(UserTier.BASIC) is UserTier.BASIC
    assert UserTier.parse("nonsense") is UserTier.FREE
