"""
Persistence for imported bank statement lines.
"""
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import func
from sqlalchemy.exc import DataError, IntegrityError
from sqlalchemy.orm import Session

from bankfeeds.integrations.base import NormalizedLine
from bankfeeds.integrations.normalization import MAX_AMOUNT, MAX_REFERENCE_LENGTH
from bankfeeds.models import StatementLine

logger = logging.getLogger(__name__)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def fits_columns(line: NormalizedLine) -> bool:
    """Whether the line's amounts and reference fit the bank_statement_lines columns."""
    if len(line.reference) > MAX_REFERENCE_LENGTH:
        return False
    amounts = [line.debit, line.credit]
    if line.balance_check is not None and line.balance_check.balance is not None:
        amounts.append(abs(line.balance_check.balance))
    return all(amount <= MAX_AMOUNT for amount in amounts)


class StatementLineRepository:
    """Statement line sink backed by the bank_statement_lines table."""

    def __init__(self, db: Session):
        self.db = db

    def latest_transaction_date(self, account_id) -> Optional[datetime]:
        """
        Latest transaction date for the account as an aware UTC datetime.
        Balance-check lines are ignored; they are stamped with the request
        time, not a provider transaction date.
        """
        latest = self.db.query(func.max(StatementLine.transaction_date)).filter(
            StatementLine.account_id == account_id,
            StatementLine.is_balance_check.is_(False),
        ).scalar()
        if latest is None:
            return None
        return latest.replace(tzinfo=timezone.utc)

    def get_by_reference(self, account_id, reference: str) -> Optional[StatementLine]:
        return self.db.query(StatementLine).filter(
            StatementLine.account_id == account_id,
            StatementLine.reference == reference,
        ).first()

    def add(self, tenant_id: str, account_id, line: NormalizedLine) -> bool:
        """
        Insert a line tagged unmatched.

        Returns:
            False when the account already has a line with this reference,
            or the line cannot be stored and was skipped
        """
        if not fits_columns(line):
            logger.warning(f"Skipping statement line {line.reference[:64]!r} for account {account_id}: value out of range")
            return False
        if self.get_by_reference(account_id, line.reference) is not None:
            return False

        row = StatementLine(
            tenant_id=tenant_id,
            account_id=account_id,
            transaction_date=to_naive_utc(line.transaction_date),
            description=line.description[:512],
            debit=line.debit,
            credit=line.credit,
            balance=line.balance_check.balance if line.balance_check else None,
            reference=line.reference,
            is_balance_check=line.is_balance_check,
            is_matched=False,
        )

        # A concurrent writer may insert the same reference between the check and the flush.
        savepoint = self.db.begin_nested()
        try:
            self.db.add(row)
            self.db.flush()
        except IntegrityError:
            savepoint.rollback()
            logger.info(f"Statement line {line.reference} already exists for account {account_id}")
            return False
        except DataError as e:
            savepoint.rollback()
            logger.warning(f"Skipping statement line {line.reference} for account {account_id}: {e.orig}")
            return False
        savepoint.commit()
        return True

    def upsert(self, tenant_id: str, account_id, line: NormalizedLine) -> StatementLine:
        """Create the line, or refresh an unmatched existing one with provider data."""
        existing = self.get_by_reference(account_id, line.reference)
        if existing is None:
            self.add(tenant_id, account_id, line)
            return self.get_by_reference(account_id, line.reference)

        if not existing.is_matched:
            existing.transaction_date = to_naive_utc(line.transaction_date)
            existing.description = line.description[:512]
            existing.debit = line.debit
            existing.credit = line.credit
        return existing

    def set_balance(self, account_id, reference: str, balance: Decimal) -> Optional[StatementLine]:
        line = self.get_by_reference(account_id, reference)
        if line is not None:
            line.balance = balance
        return line

    def count_for_account(self, account_id, unmatched_only: bool = False) -> int:
        query = self.db.query(StatementLine).filter(StatementLine.account_id == account_id)
        if unmatched_only:
            query = query.filter(StatementLine.is_matched.is_(False))
        return query.count()

    def commit(self) -> None:
        self.db.commit()

    def rollback(self) -> None:
        self.db.rollback()
