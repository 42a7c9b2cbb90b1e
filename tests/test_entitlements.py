"""
Tests for tier entitlements and credit costs
"""

import pytest

from docjobs.entitlements import (
    MB,
    TIER_ORDER,
    JobPriority,
    Operation,
    Tier,
    credit_cost,
    parse_tier,
    resolve,
)


class TestResolve:
    """Entitlement lookup per tier"""

    def test_free_tier(self):
        entitlement = resolve(Tier.FREE)
        assert entitlement.max_credits_per_month == 5
        assert entitlement.max_file_size_bytes == 10 * MB
        assert entitlement.max_concurrent_jobs == 1
        assert entitlement.allows('compress')
        assert not entitlement.allows('extract')

    def test_starter_tier(self):
        entitlement = resolve('STARTER')
        assert entitlement.max_credits_per_month == 100
        assert entitlement.max_file_size_bytes == 50 * MB
        assert entitlement.allows(Operation.EXTRACT)
        assert not entitlement.allows(Operation.PROTECT)

    def test_business_allows_everything(self):
        entitlement = resolve(Tier.BUSINESS)
        for operation in Operation:
            assert entitlement.allows(operation)

    def test_unknown_tier_is_most_restrictive(self):
        assert resolve('PLATINUM') == resolve(Tier.FREE)
        assert resolve(None) == resolve(Tier.FREE)

    def test_tier_names_are_case_insensitive(self):
        assert parse_tier(' professional ') is Tier.PROFESSIONAL

    def test_unknown_operation_is_not_allowed(self):
        assert not resolve(Tier.BUSINESS).allows('shred')

    def test_higher_tiers_never_get_less(self):
        for lower, higher in zip(TIER_ORDER, TIER_ORDER[1:]):
            low, high = resolve(lower), resolve(higher)
            assert high.max_credits_per_month >= low.max_credits_per_month
            assert high.max_file_size_bytes >= low.max_file_size_bytes
            assert high.max_concurrent_jobs >= low.max_concurrent_jobs
            assert high.queue_priority >= low.queue_priority
            assert low.allowed_operations <= high.allowed_operations

    def test_paid_tiers_are_dequeued_first(self):
        assert resolve(Tier.STARTER).queue_priority > resolve(Tier.FREE).queue_priority
        assert resolve(Tier.BUSINESS).queue_priority == JobPriority.URGENT


class TestCreditCost:
    def test_default_cost(self):
        assert credit_cost('compress') == 1

    def test_configured_cost(self):
        assert credit_cost(Operation.SIGN, {'sign': 3}) == 3
        assert credit_cost('merge', {'sign': 3}) == 1

    def test_unknown_operation(self):
        with pytest.raises(ValueError):
            credit_cost('shred')
