"""Credit ledger: FIFO-by-expiry consumption of credit batches.

Each ``credit_ledger`` row is a batch of credits with an optional expiry
date. A charge consumes the soonest-expiring batches first (never-expiring
batches last, ties broken by id) and appends exactly one ``usage``
transaction to the audit log.
"""

from dataclasses import dataclass, field
from datetime import date
from typing import List, Optional, Tuple

from sqlalchemy import case, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from core.database import Database
from core.logging import get_logger
from models.database import (
    CreditLedgerEntry,
    CreditTransaction,
    TransactionType,
    utctoday,
)
from services.exceptions import InsufficientCredits

logger = get_logger(__name__)

# Float credits are compared with a small tolerance
_EPSILON = 1e-9


@dataclass
class Charge:
    """Result of a successful charge; enough to compensate it later."""
    user_id: int
    amount: float
    balance_after: float
    reference_id: Optional[str] = None
    allocations: List[Tuple[int, float]] = field(default_factory=list)
    transaction_id: Optional[int] = None


def _spendable(user_id: int, today: date):
    return (
        CreditLedgerEntry.user_id == user_id,
        CreditLedgerEntry.remaining > 0,
        or_(CreditLedgerEntry.expires_at.is_(None), CreditLedgerEntry.expires_at >= today),
    )


class CreditLedger:
    """Charges, refunds and grants against a user's credit batches."""

    def __init__(self, database: Database):
        self.database = database

    async def balance(self, user_id: int, session: Optional[AsyncSession] = None) -> float:
        """Sum of unexpired remaining credits."""
        stmt = select(func.coalesce(func.sum(CreditLedgerEntry.remaining), 0)).where(
            *_spendable(user_id, utctoday())
        )
        if session is not None:
            return float((await session.execute(stmt)).scalar_one())
        async with self.database.get_session() as own:
            return float((await own.execute(stmt)).scalar_one())

    async def charge(self, user_id: int, cost: float, description: str,
                     reference_id: Optional[str] = None) -> Optional[Charge]:
        """Deduct ``cost`` credits FIFO by expiry.

        Returns None for a zero cost. Raises InsufficientCredits before
        touching any row when the spendable balance is short. Each per-batch
        deduction is a conditional UPDATE committed on its own; if a
        concurrent charge drains a batch mid-walk, the deductions made so far
        are put back and InsufficientCredits is raised.
        """
        if cost is None or cost <= 0:
            return None

        today = utctoday()
        async with self.database.get_session() as session:
            result = await session.execute(
                select(CreditLedgerEntry)
                .where(*_spendable(user_id, today))
                .order_by(
                    CreditLedgerEntry.expires_at.is_(None),
                    CreditLedgerEntry.expires_at.asc(),
                    CreditLedgerEntry.id.asc(),
                )
            )
            entries = list(result.scalars().all())
            available = sum(e.remaining for e in entries)
            if available + _EPSILON < cost:
                raise InsufficientCredits(cost, available)

            allocations: List[Tuple[int, float]] = []
            left = cost
            for entry in entries:
                if left <= _EPSILON:
                    break
                take = min(entry.remaining, left)
                res = await session.execute(
                    update(CreditLedgerEntry)
                    .where(CreditLedgerEntry.id == entry.id,
                           CreditLedgerEntry.remaining >= take)
                    .values(remaining=CreditLedgerEntry.remaining - take)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
                if res.rowcount:
                    allocations.append((entry.id, take))
                    left -= take

            if left > _EPSILON:
                await self._restore(session, allocations)
                await session.commit()
                available = await self.balance(user_id, session=session)
                logger.warning("Charge lost a race, deductions restored",
                               user_id=user_id, cost=cost, available=available)
                raise InsufficientCredits(cost, available)

            balance_after = await self.balance(user_id, session=session)
            txn = CreditTransaction(
                user_id=user_id,
                type=TransactionType.USAGE.value,
                amount=-cost,
                balance_after=balance_after,
                description=description,
                reference_id=reference_id,
            )
            session.add(txn)
            await session.commit()
            await session.refresh(txn)

        logger.info("Credits charged", user_id=user_id, cost=cost,
                    balance_after=balance_after, reference_id=reference_id,
                    batches=len(allocations))
        return Charge(
            user_id=user_id,
            amount=cost,
            balance_after=balance_after,
            reference_id=reference_id,
            allocations=allocations,
            transaction_id=txn.id,
        )

    async def refund(self, charge: Optional[Charge], reason: str) -> None:
        """Compensate a charge by restoring each consumed amount to its batch."""
        if charge is None or not charge.allocations:
            return
        async with self.database.get_session() as session:
            await self._restore(session, charge.allocations)
            balance_after = await self.balance(charge.user_id, session=session)
            session.add(CreditTransaction(
                user_id=charge.user_id,
                type=TransactionType.REFUND.value,
                amount=charge.amount,
                balance_after=balance_after,
                description=f"Refund: {reason}"[:500],
                reference_id=charge.reference_id,
            ))
            await session.commit()
        logger.info("Credits refunded", user_id=charge.user_id, amount=charge.amount,
                    reference_id=charge.reference_id)

    async def grant(self, user_id: int, credits: float, source: str = "topup",
                    expires_at: Optional[date] = None,
                    description: Optional[str] = None) -> CreditLedgerEntry:
        """Add a new credit batch and record a ``grant`` transaction."""
        if credits <= 0:
            raise ValueError("credits must be positive")
        async with self.database.get_session() as session:
            entry = CreditLedgerEntry(
                user_id=user_id,
                credits=credits,
                remaining=credits,
                source=source,
                expires_at=expires_at,
            )
            session.add(entry)
            await session.flush()
            balance_after = await self.balance(user_id, session=session)
            session.add(CreditTransaction(
                user_id=user_id,
                type=TransactionType.GRANT.value,
                amount=credits,
                balance_after=balance_after,
                description=description or f"Credits added ({source})",
                reference_id=f"ledger_{entry.id}",
            ))
            await session.commit()
            await session.refresh(entry)
        return entry

    @staticmethod
    async def _restore(session: AsyncSession, allocations: List[Tuple[int, float]]) -> None:
        # remaining never exceeds the batch size
        for ledger_id, amount in allocations:
            await session.execute(
                update(CreditLedgerEntry)
                .where(CreditLedgerEntry.id == ledger_id)
                .values(remaining=case(
                    (CreditLedgerEntry.remaining + amount > CreditLedgerEntry.credits, CreditLedgerEntry.credits),
                    else_=CreditLedgerEntry.remaining + amount,
                ))
                .execution_options(synchronize_session=False)
            )
