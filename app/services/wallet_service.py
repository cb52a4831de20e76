"""Wallet ledger."""

from decimal import Decimal
from uuid import UUID

import structlog
from sqlalchemy import case, func, insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.wallet_transactions import wallet_transactions

logger = structlog.get_logger(__name__)


class WalletService:
    """Service for crediting patient wallets."""

    def __init__(self, db: AsyncSession):
        """Initialize service with database session."""
        self.db = db

    async def credit(
        self,
        user_id: UUID,
        amount: Decimal,
        reason: str,
        reference_id: str,
    ) -> bool:
        """
        Credit a user's wallet once per reference.

        A second credit with the same reference is treated as already applied.

        Args:
            user_id: Wallet owner
            amount: Amount to credit
            reason: Ledger description
            reference_id: Idempotency reference (usually the appointment ID)

        Returns:
            True if the credit was written now, False if it already existed
        """
        try:
            await self.db.execute(
                insert(wallet_transactions).values(
                    user_id=user_id,
                    transaction_type="credit",
                    amount=amount,
                    description=reason,
                    reference_id=reference_id,
                )
            )
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            logger.info("wallet_credit_already_applied", user_id=str(user_id), reference_id=reference_id)
            return False

        logger.info(
            "wallet_credited",
            user_id=str(user_id),
            amount=str(amount),
            reference_id=reference_id,
        )
        return True

    async def get_balance(self, user_id: UUID) -> Decimal:
        """Net balance of a user's ledger."""
        signed = func.sum(
            case(
                (wallet_transactions.c.transaction_type == "credit", wallet_transactions.c.amount),
                else_=-wallet_transactions.c.amount,
            )
        )
        result = await self.db.execute(
            select(func.coalesce(signed, 0)).where(wallet_transactions.c.user_id == user_id)
        )
        return Decimal(str(result.scalar() or 0))
