"""
Wallet models
Includes: Wallet, WalletTransaction
"""
from sqlalchemy import Column, String, ForeignKey, Float, Text, Index
from sqlalchemy.orm import relationship
from core.database import BaseModel, GUID


class Wallet(BaseModel):
    """One store-credit wallet per customer"""
    __tablename__ = "wallets"
    __table_args__ = {'extend_existing': True}

    user_id = Column(GUID(), unique=True, nullable=False)
    balance = Column(Float, nullable=False, default=0.0)

    transactions = relationship("WalletTransaction", back_populates="wallet",
                                cascade="all, delete-orphan",
                                order_by="WalletTransaction.created_at")


class WalletTransaction(BaseModel):
    """Append-only wallet ledger entry"""
    __tablename__ = "wallet_transactions"
    __table_args__ = (
        Index('idx_wallet_transactions_wallet_id', 'wallet_id'),
        Index('idx_wallet_transactions_order_id', 'order_id'),
        {'extend_existing': True}
    )

    wallet_id = Column(GUID(), ForeignKey("wallets.id"), nullable=False)
    # credit, debit
    transaction_type = Column(String(20), nullable=False)
    amount = Column(Float, nullable=False)
    description = Column(Text, nullable=True)
    order_id = Column(GUID(), nullable=True)
    reference = Column(String(50), unique=True, nullable=False)  # TXN-<millis>-<rand>
    balance_after = Column(Float, nullable=False)

    wallet = relationship("Wallet", back_populates="transactions")
