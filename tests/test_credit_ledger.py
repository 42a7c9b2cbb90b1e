"""
Tests for the credit ledger
"""

import threading
from datetime import timedelta

import pytest

from docjobs.db.models import utcnow
from docjobs.entitlements import Tier
from docjobs.exceptions import AccountNotFound, InsufficientCredits


class TestCreditLedger:

    def test_new_account_gets_tier_allotment(self, accounts, ledger):
        account = accounts.create_account(Tier.STARTER)
        assert account.monthly_allotment == 100
        assert ledger.available(account.id) == 100

    def test_deduct(self, accounts, ledger):
        account = accounts.create_account(Tier.FREE)
        assert ledger.try_deduct(account.id, 2) == 3
        assert ledger.available(account.id) == 3
        assert accounts.get(account.id).credits_used == 2

    def test_deduct_never_overdraws(self, accounts, ledger):
        account = accounts.create_account(Tier.FREE, credits_used=4)
        with pytest.raises(InsufficientCredits):
            ledger.try_deduct(account.id, 2)
        assert accounts.get(account.id).credits_used == 4
        assert ledger.try_deduct(account.id, 1) == 0

    def test_deduct_from_inactive_account(self, accounts, ledger):
        account = accounts.create_account(Tier.FREE)
        accounts.deactivate(account.id)
        with pytest.raises(InsufficientCredits):
            ledger.try_deduct(account.id, 1)

    def test_unknown_account(self, ledger):
        with pytest.raises(AccountNotFound):
            ledger.try_deduct('acc_missing', 1)
        with pytest.raises(AccountNotFound):
            ledger.available('acc_missing')

    def test_negative_amount(self, accounts, ledger):
        account = accounts.create_account(Tier.FREE)
        with pytest.raises(ValueError):
            ledger.try_deduct(account.id, -1)

    def test_concurrent_deductions_respect_balance(self, accounts, ledger):
        account = accounts.create_account(Tier.FREE)  # 5 credits
        attempts = 8
        results = []
        lock = threading.Lock()
        barrier = threading.Barrier(attempts)

        def deduct():
            barrier.wait()
            try:
                ledger.try_deduct(account.id, 1)
                outcome = 'ok'
            except InsufficientCredits:
                outcome = 'refused'
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=deduct) for _ in range(attempts)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results.count('ok') == 5
        assert results.count('refused') == 3
        assert accounts.get(account.id).credits_used == 5

    def test_refund_floors_at_zero(self, accounts, ledger):
        account = accounts.create_account(Tier.FREE, credits_used=2)
        assert ledger.refund(account.id, 1)
        assert accounts.get(account.id).credits_used == 1
        assert ledger.refund(account.id, 5)
        assert accounts.get(account.id).credits_used == 0
        assert not ledger.refund(account.id, 0)

    def test_reset_period(self, accounts, ledger):
        account = accounts.create_account(Tier.FREE, credits_used=5)
        reset_at = utcnow() + timedelta(seconds=1)

        assert ledger.reset_period(account.id, reset_at)
        assert ledger.available(account.id) == 5

        ledger.try_deduct(account.id, 1)
        # Replaying the same reset does nothing
        assert not ledger.reset_period(account.id, reset_at)
        assert ledger.available(account.id) == 4

    def test_tier_change_updates_allotment(self, accounts, ledger):
        account = accounts.create_account(Tier.FREE, credits_used=5)
        assert ledger.available(account.id) == 0
        assert accounts.set_tier(account.id, 'starter')
        assert ledger.available(account.id) == 95
        assert accounts.get(account.id).tier == 'STARTER'
