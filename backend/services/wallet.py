"""
Wallet service: store-credit balances and their append-only ledger
"""
import logging
import time
from typing import Dict, Any, Optional
from uuid import UUID, uuid4
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, desc

from models.wallet import Wallet, WalletTransaction
from core.exceptions import ValidationException
from services.order_rules import money

logger = logging.getLogger(__name__)


def generate_transaction_reference() -> str:
    return f"TXN-{int(time.time() * 1000)}-{uuid4().hex[:6].upper()}"


class WalletService:
    """Wallet ledger operations. Changes are staged on the caller's session."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_or_create_wallet(self, user_id: UUID) -> Wallet:
        result = await self.db.execute(select(Wallet).where(Wallet.user_id == user_id))
        wallet = result.scalar_one_or_none()
        if wallet is None:
            wallet = Wallet(user_id=user_id, balance=0.0)
            self.db.add(wallet)
            await self.db.flush()
        return wallet

    async def credit(
        self,
        user_id: UUID,
        amount: float,
        description: str,
        order_id: Optional[UUID] = None
    ) -> WalletTransaction:
        if amount <= 0:
            raise ValidationException(message="Credit amount must be positive")

        wallet = await self.get_or_create_wallet(user_id)
        wallet.balance = money(wallet.balance + amount)
        entry = WalletTransaction(
            wallet_id=wallet.id,
            transaction_type="credit",
            amount=money(amount),
            description=description,
            order_id=order_id,
            reference=generate_transaction_reference(),
            balance_after=wallet.balance,
        )
        self.db.add(entry)
        logger.info(f"Credited {amount} to wallet of user {user_id}, balance {wallet.balance}")
        return entry

    async def debit(
        self,
        user_id: UUID,
        amount: float,
        description: str,
        order_id: Optional[UUID] = None
    ) -> WalletTransaction:
        if amount <= 0:
            raise ValidationException(message="Debit amount must be positive")

        wallet = await self.get_or_create_wallet(user_id)
        if wallet.balance < amount:
            raise ValidationException(
                message=f"Insufficient wallet balance. Available: {wallet.balance}, Required: {amount}"
            )

        wallet.balance = money(wallet.balance - amount)
        entry = WalletTransaction(
            wallet_id=wallet.id,
            transaction_type="debit",
            amount=money(amount),
            description=description,
            order_id=order_id,
            reference=generate_transaction_reference(),
            balance_after=wallet.balance,
        )
        self.db.add(entry)
        logger.info(f"Debited {amount} from wallet of user {user_id}, balance {wallet.balance}")
        return entry

    async def get_history(self, user_id: UUID, page: int = 1, limit: int = 10) -> Dict[str, Any]:
        wallet = await self.get_or_create_wallet(user_id)

        total = await self.db.scalar(
            select(func.count(WalletTransaction.id)).where(WalletTransaction.wallet_id == wallet.id)
        )
        result = await self.db.execute(
            select(WalletTransaction)
            .where(WalletTransaction.wallet_id == wallet.id)
            .order_by(desc(WalletTransaction.created_at))
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return {
            "wallet": wallet,
            "transactions": result.scalars().all(),
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total or 0,
                "pages": ((total or 0) + limit - 1) // limit,
            },
        }
