"""
Credit Ledger

Per-account monthly credit balance. Every mutation is one conditional
UPDATE against the accounts table, so concurrent deductions from any number
of processes can never push ``credits_used`` past ``monthly_allotment``.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import case, select, update
from sqlalchemy.orm import Session

from docjobs.db.connection import Database
from docjobs.db.models import Account, utcnow
from docjobs.exceptions import AccountNotFound, InsufficientCredits

logger = logging.getLogger(__name__)


class CreditLedger:
    """Credit balance operations for accounts"""

    def __init__(self, db: Database):
        self.db = db

    def available(self, account_id: str) -> int:
        """Remaining credits of the current period"""
        with self.db.session() as session:
            row = session.execute(
                select(Account.monthly_allotment, Account.credits_used)
                .where(Account.id == account_id)
            ).one_or_none()
        if row is None:
            raise AccountNotFound(account_id=account_id)
        return max(0, row.monthly_allotment - row.credits_used)

    def has_credits(self, account_id: str, amount: int) -> bool:
        return self.available(account_id) >= amount

    def try_deduct(self, account_id: str, amount: int, session: Optional[Session] = None) -> int:
        """
        Deduct credits if the balance allows it.

        Args:
            account_id: Account to charge
            amount: Credits to deduct
            session: Join this session's transaction instead of committing

        Returns:
            Remaining balance after the deduction

        Raises:
            InsufficientCredits: Balance too low or account inactive
            AccountNotFound: No such account
        """
        if amount < 0:
            raise ValueError("amount must not be negative")

        with self.db.scope(session) as s:
            result = s.execute(
                update(Account)
                .where(
                    Account.id == account_id,
                    Account.active.is_(True),
                    Account.credits_used + amount <= Account.monthly_allotment
                )
                .values(credits_used=Account.credits_used + amount, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                exists = s.execute(select(Account.id).where(Account.id == account_id)).scalar_one_or_none()
                if exists is None:
                    raise AccountNotFound(account_id=account_id)
                logger.info(f"Credit deduction of {amount} refused for {account_id}")
                raise InsufficientCredits(account_id=account_id, required=amount)

            row = s.execute(
                select(Account.monthly_allotment, Account.credits_used)
                .where(Account.id == account_id)
            ).one()

        remaining = max(0, row.monthly_allotment - row.credits_used)
        logger.debug(f"Deducted {amount} credits from {account_id}, {remaining} remaining")
        return remaining

    def refund(self, account_id: str, amount: int, session: Optional[Session] = None) -> bool:
        """Give credits back; ``credits_used`` never goes below zero"""
        if amount <= 0:
            return False
        with self.db.scope(session) as s:
            result = s.execute(
                update(Account)
                .where(Account.id == account_id)
                .values(
                    credits_used=case(
                        (Account.credits_used > amount, Account.credits_used - amount),
                        else_=0
                    ),
                    updated_at=utcnow()
                )
                .execution_options(synchronize_session=False)
            )
        if result.rowcount == 1:
            logger.info(f"Refunded {amount} credits to {account_id}")
            return True
        return False

    def reset_period(self, account_id: str, reset_at: Optional[datetime] = None) -> bool:
        """
        Start a new billing period.

        Only applies when ``reset_at`` is newer than the stored period start,
        so replaying the same reset is a no-op.
        """
        reset_at = reset_at or utcnow()
        with self.db.transaction() as session:
            result = session.execute(
                update(Account)
                .where(Account.id == account_id, Account.period_reset_at < reset_at)
                .values(credits_used=0, period_reset_at=reset_at, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
        if result.rowcount == 1:
            logger.info(f"Credit period reset for {account_id} at {reset_at.isoformat()}")
            return True
        return False
